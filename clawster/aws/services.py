"""Thin boto3 adapters for Secrets Manager and CloudWatch Logs."""

from datetime import datetime

from botocore.exceptions import ClientError

from ..errors import ProvisioningError, is_already_exists_error, is_not_found_error
from ..types import LogEvent


class SecretStore:
    """Named JSON blobs in Secrets Manager."""

    def __init__(self, client):
        self.client = client

    def create_secret(self, name: str, value: str, tags: dict[str, str] | None = None) -> str:
        """:return: ARN of the new secret"""
        params = {"Name": name, "SecretString": value}
        if tags:
            params["Tags"] = [{"Key": k, "Value": v} for k, v in tags.items()]
        response = self.client.create_secret(**params)
        arn = response.get("ARN")
        if not arn:
            raise ProvisioningError(f"Failed to create secret '{name}': no ARN returned")
        return arn

    def update_secret(self, name: str, value: str) -> None:
        self.client.put_secret_value(SecretId=name, SecretString=value)

    def delete_secret(self, name: str, force: bool = False) -> None:
        params = {"SecretId": name}
        if force:
            params["ForceDeleteWithoutRecovery"] = True
        self.client.delete_secret(**params)

    def secret_exists(self, name: str) -> bool:
        try:
            self.client.describe_secret(SecretId=name)
            return True
        except ClientError as e:
            if is_not_found_error(e):
                return False
            raise


class LogStore:
    """Log groups and capped event reads in CloudWatch Logs."""

    def __init__(self, client):
        self.client = client

    def get_log_streams(self, log_group: str) -> list[str]:
        """:return: Stream names, most recently written first"""
        response = self.client.describe_log_streams(
            logGroupName=log_group, orderBy="LastEventTime", descending=True
        )
        return [s["logStreamName"] for s in response.get("logStreams", []) if s.get("logStreamName")]

    def get_logs(
        self,
        log_group: str,
        *,
        limit: int | None = None,
        start_time: datetime | None = None,
    ) -> list[LogEvent]:
        """Read events from the latest stream of a log group, oldest first.

        :return: Empty list when the group has no streams yet
        """
        streams = self.get_log_streams(log_group)
        if not streams:
            return []

        params = {"logGroupName": log_group, "logStreamName": streams[0], "startFromHead": False}
        if limit:
            params["limit"] = limit
        if start_time:
            params["startTime"] = int(start_time.timestamp() * 1000)
        response = self.client.get_log_events(**params)
        return [
            {"timestamp": e.get("timestamp", 0), "message": e.get("message", "")}
            for e in response.get("events", [])
        ]

    def create_log_group(self, log_group: str, tags: dict[str, str] | None = None) -> None:
        params = {"logGroupName": log_group}
        if tags:
            params["tags"] = tags
        try:
            self.client.create_log_group(**params)
        except ClientError as e:
            if not is_already_exists_error(e):
                raise

    def delete_log_group(self, log_group: str) -> None:
        try:
            self.client.delete_log_group(logGroupName=log_group)
        except ClientError as e:
            if not is_not_found_error(e):
                raise
