"""Deployment target contract and factory."""

from datetime import datetime
from typing import Protocol

from .aws.ec2_target import AwsEc2Target
from .aws.ecs_target import EcsEc2Target
from .errors import ConfigurationError
from .types import (
    ConfigureResult,
    GatewayEndpoint,
    ProvisioningResult,
    TargetKind,
    TargetStatus,
)

TARGET_KINDS = ("aws-ec2", "ecs-ec2")


class DeploymentTarget(Protocol):
    """Lifecycle contract shared by every backend.

    not-installed -> install -> stopped -> start -> running -> stop -> stopped;
    restart always ends running; destroy returns to not-installed. "error" is
    only ever reported by get_status().
    """

    kind: str
    profile_name: str | None

    def install(
        self, profile_name: str, port: int = ..., openclaw_version: str | None = None
    ) -> ProvisioningResult: ...

    def configure(
        self,
        profile_name: str,
        gateway_port: int = ...,
        environment: dict[str, str] | None = None,
        config: dict | None = None,
    ) -> ConfigureResult: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def restart(self) -> None: ...

    def get_status(self) -> TargetStatus: ...

    def get_endpoint(self) -> GatewayEndpoint: ...

    def get_logs(self, lines: int | None = None, since: datetime | None = None) -> list[str]: ...

    def destroy(self) -> None: ...


def get_target(kind: TargetKind, config: dict | None = None, **overrides) -> DeploymentTarget:
    """Build a target for kind, passing overrides (injected clients, timeouts) through."""
    config = dict(config or {})
    if kind == "aws-ec2":
        return AwsEc2Target(config, **overrides)
    elif kind == "ecs-ec2":
        return EcsEc2Target(config, **overrides)
    raise ConfigurationError(f"Unknown target: {kind}. Available: {', '.join(TARGET_KINDS)}")
