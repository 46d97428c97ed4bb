"""Type definitions for clawster."""

from typing import Callable, Literal, TypedDict

TargetKind = Literal["aws-ec2", "ecs-ec2"]
TargetState = Literal["not-installed", "stopped", "running", "error"]
GatewayProtocol = Literal["ws", "wss"]
LogCallback = Callable[[str, str], None]


class SharedInfraIds(TypedDict):
    """Identifiers of the region-wide network and IAM bundle."""

    vpc_id: str
    subnet_id: str
    internet_gateway_id: str
    route_table_id: str
    security_group_id: str
    instance_profile_arn: str
    iam_role_name: str


class LaunchTemplateConfig(TypedDict):
    instance_type: str
    boot_disk_size_gb: int
    ami_id: str
    security_group_id: str
    instance_profile_arn: str
    user_data: str  # base64 encoded
    tags: dict[str, str]


class SecurityGroupRule(TypedDict):
    port: int
    cidr: str
    description: str


class ProvisioningResult(TypedDict, total=False):
    success: bool
    instance_id: str
    message: str
    service_name: str  # ECS only


class ConfigureResult(TypedDict):
    success: bool
    requires_restart: bool
    message: str


class TargetStatus(TypedDict, total=False):
    state: TargetState
    gateway_port: int
    error: str


class GatewayEndpoint(TypedDict):
    host: str
    port: int
    protocol: GatewayProtocol


class LogEvent(TypedDict):
    timestamp: int  # epoch millis
    message: str


class StackInfo(TypedDict, total=False):
    stack_id: str
    stack_name: str
    status: str
    status_reason: str


class AwsEc2Config(TypedDict, total=False):
    """Static configuration for the Caddy-on-VM target."""

    region: str
    access_key_id: str
    secret_access_key: str
    aws_profile: str  # named profile from ~/.aws/config
    profile_name: str  # bot profile, when known up front
    instance_type: str
    boot_disk_size_gb: int
    custom_domain: str
    allowed_cidrs: list[str]
    image: str


class EcsEc2Config(TypedDict, total=False):
    """Static configuration for the ECS-on-EC2 target."""

    region: str
    access_key_id: str
    secret_access_key: str
    aws_profile: str
    profile_name: str
    subnet_ids: list[str]
    security_group_id: str
    cluster_name: str
    image: str
    cpu: int
    memory: int
    assign_public_ip: bool
    execution_role_arn: str
    task_role_arn: str
