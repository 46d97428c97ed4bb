"""Provision and run OpenClaw bots on AWS."""

from .aws.compute import ComputeManager
from .aws.ec2_target import AwsEc2Target
from .aws.ecs_target import EcsEc2Target
from .aws.network import NetworkManager
from .aws.stack_cleanup import StackCleanupService
from .errors import ClawsterError
from .targets import DeploymentTarget, get_target

__all__ = [
    "AwsEc2Target",
    "ClawsterError",
    "ComputeManager",
    "DeploymentTarget",
    "EcsEc2Target",
    "NetworkManager",
    "StackCleanupService",
    "get_target",
]
