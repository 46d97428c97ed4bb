"""Recovery for CloudFormation stacks stuck in DELETE_FAILED.

ECS-on-EC2 stacks usually fail to delete because the cluster still has
registered container instances, or because the capacity provider left its
auto scaling group instances protected from scale-in. Cleanup unblocks
those first; if deletion still fails, the resources named in the failure
reason are retained so the rest of the stack can go.
"""

import re

from botocore.exceptions import ClientError

from ..errors import OperationTimeoutError, StackOperationError, error_code, is_not_found_error
from ..types import LogCallback, StackInfo
from ..utils import log, wait_for, warn

STACK_DELETE_TIMEOUT = 900
STACK_POLL_INTERVAL = 10

_STUCK_RESOURCES_RE = re.compile(r"\[([^\]]+)\]")


def parse_stuck_resources(reason: str) -> list[str]:
    """Extract logical ids from a reason like "... [ResourceA, ResourceB]"."""
    match = _STUCK_RESOURCES_RE.search(reason or "")
    if not match:
        return []
    return [r.strip() for r in match.group(1).split(",") if r.strip()]


class StackService:
    """CloudFormation stack describe/delete/wait."""

    def __init__(self, client, *, poll_interval: float = STACK_POLL_INTERVAL):
        self.client = client
        self.poll_interval = poll_interval

    def describe_stack(self, stack_name: str) -> StackInfo | None:
        try:
            stacks = self.client.describe_stacks(StackName=stack_name).get("Stacks", [])
        except ClientError as e:
            if error_code(e) == "ValidationError" and "does not exist" in str(e):
                return None
            raise
        if not stacks:
            return None
        stack = stacks[0]
        return {
            "stack_id": stack.get("StackId", ""),
            "stack_name": stack.get("StackName", stack_name),
            "status": stack.get("StackStatus", ""),
            "status_reason": stack.get("StackStatusReason", ""),
        }

    def delete_stack(self, stack_name: str, retain_resources: list[str] | None = None) -> None:
        params = {"StackName": stack_name}
        if retain_resources:
            params["RetainResources"] = retain_resources
        self.client.delete_stack(**params)

    def wait_for_delete(self, stack_name: str, timeout: float = STACK_DELETE_TIMEOUT) -> None:
        """Block until the stack is gone.

        :raises StackOperationError: on DELETE_FAILED or when timeout elapses
        """

        def deleted() -> bool:
            info = self.describe_stack(stack_name)
            if not info or info["status"] == "DELETE_COMPLETE":
                return True
            if info["status"] == "DELETE_FAILED":
                raise StackOperationError(
                    f"Stack '{stack_name}' deletion failed: {info.get('status_reason', '')}"
                )
            return False

        try:
            wait_for(
                deleted,
                timeout=timeout,
                interval=self.poll_interval,
                description=f"stack '{stack_name}' deletion",
            )
        except OperationTimeoutError as e:
            raise StackOperationError(str(e)) from e


class AutoScalingService:
    def __init__(self, client):
        self.client = client

    def remove_scale_in_protection(self, asg_name: str) -> list[str]:
        """:return: Ids of instances whose protection was removed"""
        groups = self.client.describe_auto_scaling_groups(
            AutoScalingGroupNames=[asg_name]
        ).get("AutoScalingGroups", [])
        if not groups:
            return []

        protected = [
            i["InstanceId"]
            for i in groups[0].get("Instances", [])
            if i.get("ProtectedFromScaleIn") and i.get("InstanceId")
        ]
        if protected:
            self.client.set_instance_protection(
                AutoScalingGroupName=asg_name,
                InstanceIds=protected,
                ProtectedFromScaleIn=False,
            )
        return protected


class StackCleanupService:
    def __init__(
        self,
        stacks: StackService,
        ecs,
        autoscaling: AutoScalingService,
        *,
        cluster_name: str,
        stack_name: str,
        timeout: float = STACK_DELETE_TIMEOUT,
        log_callback: LogCallback | None = None,
    ):
        self.stacks = stacks
        self.ecs = ecs
        self.autoscaling = autoscaling
        self.cluster_name = cluster_name
        self.stack_name = stack_name
        self.timeout = timeout
        self.log_callback = log_callback

    def _log(self, msg: str, stream: str = "stdout") -> None:
        if stream == "stderr":
            warn(msg)
        else:
            log(msg)
        if self.log_callback:
            self.log_callback(msg, stream)

    def cleanup_stuck_resources(self) -> None:
        """Deregister container instances and drop ASG scale-in protection.

        Best effort: failures are logged and never raised.
        """
        try:
            arns = self.ecs.list_container_instances(cluster=self.cluster_name).get(
                "containerInstanceArns", []
            )
        except ClientError as e:
            if not is_not_found_error(e):
                self._log(f"Could not list container instances: {e}", "stderr")
            arns = []

        if arns:
            self._log(
                f"Found {len(arns)} container instance(s) to deregister from '{self.cluster_name}'"
            )
        for arn in arns:
            try:
                self.ecs.deregister_container_instance(
                    cluster=self.cluster_name, containerInstance=arn, force=True
                )
                self._log(f"Deregistered container instance: '{arn.split('/')[-1]}'")
            except Exception as e:
                self._log(f"Failed to deregister container instance: {e}", "stderr")

        asg_name = f"{self.cluster_name}-asg"
        try:
            unprotected = self.autoscaling.remove_scale_in_protection(asg_name)
            if unprotected:
                self._log(f"Removed scale-in protection from {len(unprotected)} instance(s)")
        except Exception as e:
            self._log(f"Could not clean up ASG instances: {e}", "stderr")

    def force_delete_stack(self) -> None:
        """Delete a stack stuck in DELETE_FAILED, escalating once.

        cleanup -> delete -> wait. If that fails and the stack is still in
        DELETE_FAILED, retry while retaining the resources listed in the
        failure reason. When no resources can be parsed the original error is
        re-raised.
        """
        self._log("Cleaning up stuck resources before retrying stack deletion...")
        self.cleanup_stuck_resources()

        self._log(f"Retrying deletion of stack '{self.stack_name}'...")
        self.stacks.delete_stack(self.stack_name)
        try:
            self.stacks.wait_for_delete(self.stack_name, self.timeout)
            self._log(f"Stack '{self.stack_name}' deleted")
            return
        except Exception as retry_error:
            info = self.stacks.describe_stack(self.stack_name)
            if not info or info["status"] == "DELETE_COMPLETE":
                self._log(f"Stack '{self.stack_name}' deleted")
                return

            stuck = []
            if info["status"] == "DELETE_FAILED":
                stuck = parse_stuck_resources(info.get("status_reason", ""))
            if not stuck:
                raise retry_error

        self._log(f"Retaining stuck resources and forcing deletion: {', '.join(stuck)}", "stderr")
        self.stacks.delete_stack(self.stack_name, retain_resources=stuck)
        self.stacks.wait_for_delete(self.stack_name, self.timeout)
        self._log(f"Stack '{self.stack_name}' deleted with retained resources")
