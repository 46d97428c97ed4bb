"""AWS EC2 Caddy-on-VM deployment target.

Internet -> SG (80/443) -> EC2 -> Caddy -> 127.0.0.1:port -> OpenClaw container

Each bot gets one instance launched from its own launch template into the
region's shared network. The instance is found again by tags only.
"""

import json
from datetime import datetime, timezone

from ..config import DEFAULT_REGION, get_session
from ..config_transform import apply_gateway_overrides, transform_config
from ..errors import EndpointUnavailableError, ProfileNotSetError, ProvisioningError
from ..types import (
    AwsEc2Config,
    ConfigureResult,
    GatewayEndpoint,
    LogCallback,
    ProvisioningResult,
    TargetStatus,
)
from ..user_data import (
    DEFAULT_IMAGE,
    build_caddy_user_data,
    encode_user_data,
    parse_container_settings,
)
from ..utils import log, sanitize_name, wait_for, warn
from .compute import BOT_TAG, MANAGED_TAG, ComputeManager
from .network import NetworkManager
from .services import LogStore, SecretStore

DEFAULT_GATEWAY_PORT = 18789
DEFAULT_INSTANCE_TYPE = "t3.small"
DEFAULT_BOOT_DISK_GB = 20
DEFAULT_LOG_LINES = 100
START_TIMEOUT = 600
POLL_INTERVAL = 10


def derive_names(profile_name: str) -> dict[str, str]:
    sanitized = sanitize_name(profile_name)
    return {
        "bot": sanitized,
        "launch_template": f"clawster-lt-{sanitized}",
        "secret": f"clawster/{sanitized}/config",
        "log_group": f"/clawster/{sanitized}",
    }


def format_log_line(timestamp_ms: int, message: str) -> str:
    ts = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return f"[{ts.isoformat(timespec='milliseconds').replace('+00:00', 'Z')}] {message}"


class AwsEc2Target:
    kind = "aws-ec2"

    def __init__(
        self,
        config: AwsEc2Config,
        *,
        network: NetworkManager | None = None,
        compute: ComputeManager | None = None,
        secrets: SecretStore | None = None,
        logs: LogStore | None = None,
        log_callback: LogCallback | None = None,
        start_timeout: float = START_TIMEOUT,
        poll_interval: float = POLL_INTERVAL,
    ):
        self.config = config
        self.region = config.get("region") or DEFAULT_REGION
        self.instance_type = config.get("instance_type") or DEFAULT_INSTANCE_TYPE
        self.boot_disk_size_gb = config.get("boot_disk_size_gb") or DEFAULT_BOOT_DISK_GB
        self.custom_domain = config.get("custom_domain")
        self.allowed_cidrs = config.get("allowed_cidrs") or []
        self.log_callback = log_callback
        self.start_timeout = start_timeout
        self.poll_interval = poll_interval

        self.profile_name: str | None = config.get("profile_name")
        self.gateway_port = DEFAULT_GATEWAY_PORT
        self._cached_public_ip: str | None = None

        if not (network and compute and secrets and logs):
            session = get_session({**config, "region": self.region})
            ec2 = session.client("ec2")
            network = network or NetworkManager(ec2, session.client("iam"), self.region)
            compute = compute or ComputeManager(ec2)
            secrets = secrets or SecretStore(session.client("secretsmanager"))
            logs = logs or LogStore(session.client("logs"))
        self.network = network
        self.compute = compute
        self.secrets = secrets
        self.logs = logs

    def _log(self, msg: str, stream: str = "stdout") -> None:
        if stream == "stderr":
            warn(msg)
        else:
            log(msg)
        if self.log_callback:
            self.log_callback(msg, stream)

    def _require_profile(self, operation: str) -> str:
        if not self.profile_name:
            raise ProfileNotSetError(operation)
        return self.profile_name

    def _image_uri(self, openclaw_version: str | None) -> str:
        image = self.config.get("image")
        if image:
            return f"{image}:{openclaw_version}" if openclaw_version else image
        if openclaw_version:
            return DEFAULT_IMAGE.rsplit(":", 1)[0] + f":{openclaw_version}"
        return DEFAULT_IMAGE

    def _write_launch_template(
        self,
        names: dict[str, str],
        security_group_id: str,
        instance_profile_arn: str,
        *,
        image_uri: str,
        environment: dict[str, str] | None = None,
    ) -> str:
        ami_id = self.compute.resolve_ubuntu_ami()
        user_data = build_caddy_user_data(
            self.gateway_port,
            names["secret"],
            self.region,
            image_uri=image_uri,
            custom_domain=self.custom_domain,
            additional_env=environment,
        )
        return self.compute.ensure_launch_template(
            names["launch_template"],
            {
                "instance_type": self.instance_type,
                "boot_disk_size_gb": self.boot_disk_size_gb,
                "ami_id": ami_id,
                "security_group_id": security_group_id,
                "instance_profile_arn": instance_profile_arn,
                "user_data": encode_user_data(user_data),
                "tags": {BOT_TAG: names["bot"]},
            },
        )

    def _current_container_settings(self, names: dict[str, str]) -> tuple[str | None, dict[str, str]]:
        """:return: Image and extra environment baked into the latest template version"""
        script = self.compute.get_launch_template_user_data(names["launch_template"])
        if not script:
            return None, {}
        return parse_container_settings(script)

    def _store_secret(self, name: str, value: str, *, overwrite: bool) -> None:
        if self.secrets.secret_exists(name):
            if overwrite:
                self.secrets.update_secret(name, value)
        else:
            self.secrets.create_secret(name, value, {MANAGED_TAG: "true"})

    def install(
        self,
        profile_name: str,
        port: int = DEFAULT_GATEWAY_PORT,
        openclaw_version: str | None = None,
        environment: dict[str, str] | None = None,
    ) -> ProvisioningResult:
        """Create per-bot resources without launching an instance.

        Failures are reported in the result, never raised.
        """
        self.profile_name = profile_name
        self.gateway_port = port
        try:
            names = derive_names(profile_name)

            self._log("[1/5] Ensuring shared network infrastructure...")
            infra = self.network.ensure_shared_infra()
            if self.allowed_cidrs:
                self.network.update_security_group_rules(
                    infra["security_group_id"],
                    [{"port": 22, "cidr": cidr, "description": "SSH"} for cidr in self.allowed_cidrs],
                )

            self._log("[2/5] Ensuring Secrets Manager secret...")
            self._store_secret(names["secret"], "{}", overwrite=False)

            self._log("[3/5] Creating launch template...")
            current_image, current_env = self._current_container_settings(names)
            if openclaw_version or not current_image:
                image_uri = self._image_uri(openclaw_version)
            else:
                image_uri = current_image
            template_id = self._write_launch_template(
                names,
                infra["security_group_id"],
                infra["instance_profile_arn"],
                image_uri=image_uri,
                environment=current_env if environment is None else environment,
            )

            self._log("[4/5] Instance will be launched on start")

            self._log("[5/5] Checking log group...")
            try:
                self.logs.get_log_streams(names["log_group"])
            except Exception:
                self._log(f"  Log group will be created on first write: '{names['log_group']}'")

            self._log("Installation complete")
            return {
                "success": True,
                "instance_id": template_id,
                "message": f"AWS EC2 target installed for '{profile_name}'",
            }
        except Exception as e:
            self._log(f"Installation failed: {e}", "stderr")
            return {"success": False, "instance_id": "", "message": str(e)}

    def configure(
        self,
        profile_name: str,
        gateway_port: int = DEFAULT_GATEWAY_PORT,
        environment: dict[str, str] | None = None,
        config: dict | None = None,
    ) -> ConfigureResult:
        """Store the transformed gateway config in Secrets Manager.

        When environment is given the launch template is rewritten so the next
        instance carries it. The running instance only picks the new config up
        after a restart.
        """
        self.profile_name = profile_name
        self.gateway_port = gateway_port
        try:
            names = derive_names(profile_name)
            transformed = apply_gateway_overrides(transform_config(config or {}), gateway_port)
            self._store_secret(names["secret"], json.dumps(transformed, indent=2), overwrite=True)
            self._log("Configuration stored in Secrets Manager")

            if environment:
                infra = self.network.get_shared_infra()
                if not infra:
                    raise ProvisioningError("Shared infrastructure missing; run install first")
                current_image, _ = self._current_container_settings(names)
                self._write_launch_template(
                    names,
                    infra["security_group_id"],
                    infra["instance_profile_arn"],
                    image_uri=current_image or self._image_uri(None),
                    environment=environment,
                )
        except Exception as e:
            self._log(f"Configure failed: {e}", "stderr")
            return {
                "success": False,
                "requires_restart": False,
                "message": f"Failed to store config: {e}",
            }

        return {
            "success": True,
            "requires_restart": True,
            "message": "Configuration updated, restart required to apply",
        }

    def _launch_and_wait(self, names: dict[str, str]) -> str:
        infra = self.network.get_shared_infra()
        if not infra:
            raise ProvisioningError("Shared infrastructure missing; run install first")
        instance_id = self.compute.run_instance(
            names["launch_template"], infra["subnet_id"], names["bot"]
        )
        self._wait_for_running(instance_id)
        return instance_id

    def _wait_for_running(self, instance_id: str) -> None:
        wait_for(
            lambda: self.compute.get_instance_status(instance_id) == "running",
            timeout=self.start_timeout,
            interval=self.poll_interval,
            description=f"instance '{instance_id}' to reach running state",
        )

    def start(self) -> None:
        names = derive_names(self._require_profile("start()"))
        self._log("Starting instance...")
        self._cached_public_ip = None

        instance_id = self.compute.find_instance_by_tag(names["bot"])
        if instance_id:
            status = self.compute.get_instance_status(instance_id)
            if status == "running":
                self._log(f"Instance already running: '{instance_id}'")
                return
            if status == "pending":
                self._wait_for_running(instance_id)
                self._log("Instance started")
                return
            # stopped or stopping instances are replaced, never resumed
            self.compute.terminate_instance(instance_id)

        self._launch_and_wait(names)
        self._log("Instance started")

    def stop(self) -> None:
        names = derive_names(self._require_profile("stop()"))
        self._log("Stopping instance...")
        instance_id = self.compute.find_instance_by_tag(names["bot"])
        if instance_id:
            self.compute.terminate_instance(instance_id)
            self._log("Instance stopped")
        else:
            self._log("No instance running")
        self._cached_public_ip = None

    def restart(self) -> None:
        names = derive_names(self._require_profile("restart()"))
        self._log("Recycling instance...")
        instance_id = self.compute.find_instance_by_tag(names["bot"])
        if instance_id:
            self.compute.terminate_instance(instance_id)
        self._cached_public_ip = None
        self._launch_and_wait(names)
        self._log("Instance restarted")

    def get_status(self) -> TargetStatus:
        if not self.profile_name:
            return {"state": "not-installed"}
        try:
            names = derive_names(self.profile_name)
            instance_id = self.compute.find_instance_by_tag(names["bot"])
            status = self.compute.get_instance_status(instance_id) if instance_id else "no-instance"
        except Exception as e:
            warn(f"Status lookup failed: {e}")
            return {"state": "not-installed"}

        if status in ("pending", "running"):
            return {"state": "running", "gateway_port": self.gateway_port}
        return {"state": "stopped"}

    def get_endpoint(self) -> GatewayEndpoint:
        if self.custom_domain:
            return {"host": self.custom_domain, "port": 443, "protocol": "wss"}

        if not self._cached_public_ip:
            names = derive_names(self._require_profile("get_endpoint()"))
            instance_id = self.compute.find_instance_by_tag(names["bot"])
            if not instance_id:
                raise EndpointUnavailableError("No instance found, the bot may not be running")
            self._cached_public_ip = self.compute.get_instance_public_ip(instance_id)

        if not self._cached_public_ip:
            raise EndpointUnavailableError("No public IP available, instance may not be running")
        return {"host": self._cached_public_ip, "port": 80, "protocol": "ws"}

    def get_logs(self, lines: int | None = None, since: datetime | None = None) -> list[str]:
        """:return: Formatted log lines, oldest first; empty on any failure"""
        try:
            names = derive_names(self._require_profile("get_logs()"))
            events = self.logs.get_logs(
                names["log_group"], limit=lines or DEFAULT_LOG_LINES, start_time=since
            )
        except Exception as e:
            warn(f"Could not read logs: {e}")
            return []
        return [format_log_line(e["timestamp"], e["message"]) for e in events]

    def destroy(self) -> None:
        """Delete all per-bot resources, continuing past individual failures.

        The shared infrastructure is kept for other bots.
        """
        names = derive_names(self._require_profile("destroy()"))

        def step(label: str, fn) -> None:
            self._log(label)
            try:
                fn()
            except Exception as e:
                self._log(f"  Failed: {e}", "stderr")

        def terminate() -> None:
            instance_id = self.compute.find_instance_by_tag(names["bot"])
            if instance_id:
                self.compute.terminate_instance(instance_id)

        step("[1/4] Terminating instance...", terminate)
        step(
            "[2/4] Deleting launch template...",
            lambda: self.compute.delete_launch_template(names["launch_template"]),
        )
        step("[3/4] Deleting secret...", lambda: self.secrets.delete_secret(names["secret"], force=True))
        step("[4/4] Deleting log group...", lambda: self.logs.delete_log_group(names["log_group"]))

        self._cached_public_ip = None
        self._log("Destroy complete, shared infrastructure preserved")
