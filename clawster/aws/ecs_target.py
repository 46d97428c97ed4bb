"""AWS ECS-on-EC2 deployment target.

Runs the OpenClaw gateway as a one-task ECS service on an existing cluster
backed by EC2 capacity. The caller supplies the subnets and security group.
"""

import json
from datetime import datetime

from ..config import DEFAULT_REGION, get_session
from ..config_transform import transform_config
from ..errors import EndpointUnavailableError, ProfileNotSetError
from ..types import (
    ConfigureResult,
    EcsEc2Config,
    GatewayEndpoint,
    LogCallback,
    ProvisioningResult,
    TargetStatus,
)
from ..utils import log, sanitize_name, warn
from .ec2_target import DEFAULT_GATEWAY_PORT, DEFAULT_LOG_LINES, format_log_line
from .services import LogStore, SecretStore

DEFAULT_CLUSTER = "openclaw-cluster"
DEFAULT_IMAGE = "ghcr.io/openclaw/openclaw"
DEFAULT_CPU = 1024
DEFAULT_MEMORY = 2048
CONTAINER_NAME = "openclaw"

# the config secret arrives as OPENCLAW_CONFIG and becomes the gateway's config file
STARTUP_SCRIPT = (
    "mkdir -p ~/.openclaw"
    ' && if [ -n "$OPENCLAW_CONFIG" ]; then printenv OPENCLAW_CONFIG > ~/.openclaw/openclaw.json; fi'
    " && exec openclaw gateway --port {port} --verbose"
)


class EcsEc2Target:
    kind = "ecs-ec2"

    def __init__(
        self,
        config: EcsEc2Config,
        *,
        ecs=None,
        ec2=None,
        secrets: SecretStore | None = None,
        logs: LogStore | None = None,
        log_callback: LogCallback | None = None,
    ):
        self.config = config
        self.region = config.get("region") or DEFAULT_REGION
        self.cluster_name = config.get("cluster_name") or DEFAULT_CLUSTER
        self.image = config.get("image") or DEFAULT_IMAGE
        self.cpu = config.get("cpu") or DEFAULT_CPU
        self.memory = config.get("memory") or DEFAULT_MEMORY
        self.assign_public_ip = config.get("assign_public_ip", True)
        self.log_callback = log_callback

        self.profile_name: str | None = config.get("profile_name")
        self.gateway_port = DEFAULT_GATEWAY_PORT

        if not (ecs and ec2 and secrets and logs):
            session = get_session({**config, "region": self.region})
            ecs = ecs or session.client("ecs")
            ec2 = ec2 or session.client("ec2")
            secrets = secrets or SecretStore(session.client("secretsmanager"))
            logs = logs or LogStore(session.client("logs"))
        self.ecs = ecs
        self.ec2 = ec2
        self.secrets = secrets
        self.logs = logs

    def _log(self, msg: str, stream: str = "stdout") -> None:
        if stream == "stderr":
            warn(msg)
        else:
            log(msg)
        if self.log_callback:
            self.log_callback(msg, stream)

    def _names(self, operation: str) -> dict[str, str]:
        if not self.profile_name:
            raise ProfileNotSetError(operation)
        return self.derive_names(self.profile_name)

    @staticmethod
    def derive_names(profile_name: str) -> dict[str, str]:
        sanitized = sanitize_name(profile_name)
        return {
            "service": f"openclaw-{sanitized}",
            "family": f"openclaw-{sanitized}",
            "log_group": f"/ecs/openclaw-{sanitized}",
            "secret": f"openclaw/{sanitized}/config",
        }

    def _image_uri(self, openclaw_version: str | None) -> str:
        # an image configured with an explicit tag is used as is
        if ":" in self.image.rsplit("/", 1)[-1]:
            return self.image
        return f"{self.image}:{openclaw_version or 'latest'}"

    def build_task_definition(
        self, names: dict[str, str], openclaw_version: str | None = None
    ) -> dict:
        """Register parameters for the bot's single-container task.

        The config secret is injected by ECS, so the execution role must be
        allowed secretsmanager:GetSecretValue on it.
        """
        params = {
            "family": names["family"],
            "networkMode": "awsvpc",
            "requiresCompatibilities": ["EC2"],
            "cpu": str(self.cpu),
            "memory": str(self.memory),
            "containerDefinitions": [
                {
                    "name": CONTAINER_NAME,
                    "image": self._image_uri(openclaw_version),
                    "essential": True,
                    "entryPoint": ["sh", "-c"],
                    "command": [STARTUP_SCRIPT.format(port=self.gateway_port)],
                    "portMappings": [
                        {"containerPort": self.gateway_port, "protocol": "tcp"}
                    ],
                    "environment": [
                        {"name": "OPENCLAW_GATEWAY_PORT", "value": str(self.gateway_port)},
                    ],
                    "secrets": [{"name": "OPENCLAW_CONFIG", "valueFrom": names["secret"]}],
                    "logConfiguration": {
                        "logDriver": "awslogs",
                        "options": {
                            "awslogs-group": names["log_group"],
                            "awslogs-region": self.region,
                            "awslogs-stream-prefix": CONTAINER_NAME,
                        },
                    },
                }
            ],
        }
        if self.config.get("execution_role_arn"):
            params["executionRoleArn"] = self.config["execution_role_arn"]
        if self.config.get("task_role_arn"):
            params["taskRoleArn"] = self.config["task_role_arn"]
        return params

    def install(
        self,
        profile_name: str,
        port: int = DEFAULT_GATEWAY_PORT,
        openclaw_version: str | None = None,
    ) -> ProvisioningResult:
        """Create cluster, log group, config secret, task definition and service.

        Failures are reported in the result, never raised.
        """
        self.profile_name = profile_name
        self.gateway_port = port
        try:
            names = self.derive_names(profile_name)

            self._log(f"[1/5] Creating cluster '{self.cluster_name}'...")
            self.ecs.create_cluster(clusterName=self.cluster_name)

            self._log(f"[2/5] Creating log group '{names['log_group']}'...")
            try:
                self.logs.create_log_group(names["log_group"])
            except Exception as e:
                self._log(f"  Log group creation skipped: {e}", "stderr")

            # the task cannot start while its config secret is missing
            self._log(f"[3/5] Ensuring config secret '{names['secret']}'...")
            if not self.secrets.secret_exists(names["secret"]):
                self.secrets.create_secret(names["secret"], "{}")

            self._log(f"[4/5] Registering task definition '{names['family']}'...")
            self.ecs.register_task_definition(**self.build_task_definition(names, openclaw_version))

            self._log(f"[5/5] Creating service '{names['service']}'...")
            self.ecs.create_service(
                cluster=self.cluster_name,
                serviceName=names["service"],
                taskDefinition=names["family"],
                desiredCount=1,
                launchType="EC2",
                networkConfiguration={
                    "awsvpcConfiguration": {
                        "subnets": self.config.get("subnet_ids", []),
                        "securityGroups": [self.config["security_group_id"]]
                        if self.config.get("security_group_id")
                        else [],
                        "assignPublicIp": "ENABLED" if self.assign_public_ip else "DISABLED",
                    }
                },
            )
        except Exception as e:
            self._log(f"ECS EC2 install failed: {e}", "stderr")
            return {
                "success": False,
                "instance_id": "",
                "message": f"ECS EC2 install failed: {e}",
            }

        return {
            "success": True,
            "instance_id": names["service"],
            "service_name": names["service"],
            "message": (
                f"ECS EC2 service '{names['service']}' created on cluster '{self.cluster_name}'"
            ),
        }

    def configure(
        self,
        profile_name: str,
        gateway_port: int = DEFAULT_GATEWAY_PORT,
        environment: dict[str, str] | None = None,
        config: dict | None = None,
    ) -> ConfigureResult:
        """Store the transformed config JSON as the task's config secret.

        The secret is created, or updated when creation fails. The gateway
        binds the LAN interface and takes its port from the task command, so
        gateway.port is dropped. Running tasks pick the config up on restart.
        """
        self.profile_name = profile_name
        self.gateway_port = gateway_port
        payload = transform_config(config or {})
        gateway = dict(payload.get("gateway") or {})
        gateway.pop("port", None)
        gateway["bind"] = "lan"
        payload["gateway"] = gateway
        if environment:
            payload["env"] = {**payload.get("env", {}), **environment}
        value = json.dumps(payload, indent=2)

        try:
            secret_name = self.derive_names(profile_name)["secret"]
            try:
                self.secrets.create_secret(secret_name, value)
            except Exception:
                self.secrets.update_secret(secret_name, value)
        except Exception as e:
            self._log(f"Failed to store config: {e}", "stderr")
            return {
                "success": False,
                "requires_restart": False,
                "message": f"Failed to store config: {e}",
            }

        self._log(f"Configuration stored in Secrets Manager as '{secret_name}'")
        return {
            "success": True,
            "requires_restart": True,
            "message": f"Configuration stored in Secrets Manager as '{secret_name}'",
        }

    def start(self) -> None:
        names = self._names("start()")
        self.ecs.update_service(cluster=self.cluster_name, service=names["service"], desiredCount=1)
        self._log(f"Service '{names['service']}' scaled to 1")

    def stop(self) -> None:
        names = self._names("stop()")
        self.ecs.update_service(cluster=self.cluster_name, service=names["service"], desiredCount=0)
        self._log(f"Service '{names['service']}' scaled to 0")

    def restart(self) -> None:
        names = self._names("restart()")
        self.ecs.update_service(
            cluster=self.cluster_name, service=names["service"], forceNewDeployment=True
        )
        self._log(f"Service '{names['service']}' redeploying")

    def get_status(self) -> TargetStatus:
        if not self.profile_name:
            return {"state": "not-installed"}
        names = self.derive_names(self.profile_name)
        try:
            response = self.ecs.describe_services(
                cluster=self.cluster_name, services=[names["service"]]
            )
        except Exception as e:
            warn(f"Status lookup failed: {e}")
            return {"state": "not-installed"}

        services = [s for s in response.get("services", []) if s.get("status") != "INACTIVE"]
        if not services:
            return {"state": "not-installed"}

        service = services[0]
        running = service.get("runningCount", 0)
        desired = service.get("desiredCount", 0)
        if running > 0:
            return {"state": "running", "gateway_port": self.gateway_port}
        if desired == 0:
            return {"state": "stopped"}
        return {
            "state": "error",
            "error": f"Service status: {service.get('status')}, running: {running}/{desired}",
        }

    def get_endpoint(self) -> GatewayEndpoint:
        """Resolve the public IP of the service's running task via its ENI."""
        names = self._names("get_endpoint()")

        task_arns = self.ecs.list_tasks(
            cluster=self.cluster_name, serviceName=names["service"], desiredStatus="RUNNING"
        ).get("taskArns", [])
        if not task_arns:
            raise EndpointUnavailableError(
                f"Failed to resolve ECS EC2 endpoint: no running tasks for '{names['service']}'"
            )

        tasks = self.ecs.describe_tasks(cluster=self.cluster_name, tasks=task_arns[:1]).get(
            "tasks", []
        )
        eni_id = None
        for attachment in (tasks[0].get("attachments", []) if tasks else []):
            for detail in attachment.get("details", []):
                if detail.get("name") == "networkInterfaceId":
                    eni_id = detail.get("value")
        if not eni_id:
            raise EndpointUnavailableError(
                "Failed to resolve ECS EC2 endpoint: no network interface attached to task"
            )

        interfaces = self.ec2.describe_network_interfaces(NetworkInterfaceIds=[eni_id]).get(
            "NetworkInterfaces", []
        )
        public_ip = interfaces[0].get("Association", {}).get("PublicIp") if interfaces else None
        if not public_ip:
            raise EndpointUnavailableError(f"No public IP assigned to network interface '{eni_id}'")

        return {"host": public_ip, "port": self.gateway_port, "protocol": "ws"}

    def get_logs(self, lines: int | None = None, since: datetime | None = None) -> list[str]:
        try:
            names = self._names("get_logs()")
            events = self.logs.get_logs(
                names["log_group"], limit=lines or DEFAULT_LOG_LINES, start_time=since
            )
        except Exception as e:
            warn(f"Could not read logs: {e}")
            return []
        return [format_log_line(e["timestamp"], e["message"]) for e in events]

    def destroy(self) -> None:
        """Tear down service, task definitions, secret and log group.

        Every step runs even if earlier ones failed.
        """
        names = self._names("destroy()")

        def step(label: str, fn) -> None:
            try:
                fn()
                self._log(f"  {label}: done")
            except Exception as e:
                self._log(f"  {label}: failed ({e})", "stderr")

        self._log(f"Destroying ECS EC2 resources for '{names['service']}'...")
        step(
            "Scale service to 0",
            lambda: self.ecs.update_service(
                cluster=self.cluster_name, service=names["service"], desiredCount=0
            ),
        )
        step(
            "Delete service",
            lambda: self.ecs.delete_service(
                cluster=self.cluster_name, service=names["service"], force=True
            ),
        )

        task_definition_arns = []

        def list_task_definitions() -> None:
            paginator = self.ecs.get_paginator("list_task_definitions")
            for page in paginator.paginate(familyPrefix=names["family"]):
                task_definition_arns.extend(page.get("taskDefinitionArns", []))

        step("List task definitions", list_task_definitions)
        for arn in task_definition_arns:
            step(
                f"Deregister '{arn}'",
                lambda arn=arn: self.ecs.deregister_task_definition(taskDefinition=arn),
            )

        step("Delete secret", lambda: self.secrets.delete_secret(names["secret"], force=True))
        step("Delete log group", lambda: self.logs.delete_log_group(names["log_group"]))
        self._log("Destroy complete")
