#!/usr/bin/env python3
"""Provision and run OpenClaw bots on AWS.

Usage: clawster <noun> <verb> [options]

Examples:
    clawster bot install mybot --region us-east-1
    clawster bot configure mybot ./openclaw.json
    clawster bot start mybot
    clawster bot logs mybot --lines 50
    clawster bot install mybot --target ecs-ec2 --cluster prod --subnet-ids subnet-1 subnet-2
    clawster infra cleanup --region us-east-1
    clawster stack force-delete clawster-mybot --cluster clawster-mybot
"""

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

import cyclopts
from botocore.exceptions import ClientError
from cyclopts import Parameter
from rich import print

from .aws.ec2_target import DEFAULT_GATEWAY_PORT, AwsEc2Target, derive_names
from .aws.network import NetworkManager
from .aws.stack_cleanup import AutoScalingService, StackCleanupService, StackService
from .config import DEFAULT_REGION, check_aws_auth, get_session
from .errors import ClawsterError
from .targets import DeploymentTarget, get_target
from .types import TargetKind
from .utils import error, log, setup_logging, warn
from .verify import verify_endpoint

app = cyclopts.App(name="clawster", help="Provision and run OpenClaw bots on AWS", sort_key=None)

bot_app = cyclopts.App(name="bot", help="Manage bot deployments", sort_key=1)
infra_app = cyclopts.App(name="infra", help="Manage shared regional infrastructure", sort_key=2)
stack_app = cyclopts.App(name="stack", help="Recover stuck CloudFormation stacks", sort_key=3)

app.command(bot_app)
app.command(infra_app)
app.command(stack_app)


@Parameter(name="*")
@dataclass
class TargetOptions:
    """Options shared by every bot command.

    :param target: Deployment target (aws-ec2 or ecs-ec2)
    :param region: AWS region (default: CLAWSTER_AWS_REGION, AWS_REGION or us-east-1)
    :param aws_profile: AWS profile name from ~/.aws/config
    :param domain: aws-ec2 only: custom domain served by Caddy over TLS
    :param allow_cidr: aws-ec2 only: CIDRs allowed to SSH to the instance
    :param instance_type: aws-ec2 only: EC2 instance type
    :param cluster: ecs-ec2 only: ECS cluster name
    :param subnet_ids: ecs-ec2 only: subnets for the service's tasks
    :param security_group_id: ecs-ec2 only: security group for the service's tasks
    """

    target: TargetKind = "aws-ec2"
    region: str | None = None
    aws_profile: str | None = None
    domain: str | None = None
    allow_cidr: list[str] | None = None
    instance_type: str | None = None
    cluster: str | None = None
    subnet_ids: list[str] | None = None
    security_group_id: str | None = None

    def to_config(self, name: str) -> dict:
        config = {"profile_name": name}
        for key, value in [
            ("region", self.region),
            ("aws_profile", self.aws_profile),
            ("custom_domain", self.domain),
            ("allowed_cidrs", self.allow_cidr),
            ("instance_type", self.instance_type),
            ("cluster_name", self.cluster),
            ("subnet_ids", self.subnet_ids),
            ("security_group_id", self.security_group_id),
        ]:
            if value:
                config[key] = value
        return config


def _make_target(name: str, opts: TargetOptions | None) -> DeploymentTarget:
    opts = opts or TargetOptions()
    try:
        return get_target(opts.target, opts.to_config(name))
    except ClawsterError as e:
        error(str(e))


def _run(fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except (ClawsterError, ClientError) as e:
        error(str(e))


@bot_app.command(name="install")
def install_bot(
    name: str,
    *,
    port: int = DEFAULT_GATEWAY_PORT,
    version: str | None = None,
    opts: TargetOptions | None = None,
):
    """Create per-bot resources (and shared infrastructure when missing).

    :param name: Bot profile name
    :param port: Gateway port inside the instance or task
    :param version: OpenClaw image tag (default: latest)
    """
    target = _make_target(name, opts)
    result = target.install(name, port, version)
    if not result["success"]:
        error(f"Install failed: {result['message']}")
    log(result["message"])


@bot_app.command(name="configure")
def configure_bot(
    name: str,
    config_file: Path,
    *,
    port: int = DEFAULT_GATEWAY_PORT,
    env: list[str] | None = None,
    opts: TargetOptions | None = None,
):
    """Store an OpenClaw config for the bot.

    :param name: Bot profile name
    :param config_file: JSON file with the OpenClaw config
    :param port: Gateway port
    :param env: Extra container environment as KEY=VALUE
    """
    if not config_file.exists():
        error(f"Config file not found: '{config_file}'")
    try:
        config = json.loads(config_file.read_text())
    except json.JSONDecodeError as e:
        error(f"Invalid JSON in '{config_file}': {e}")

    environment = {}
    for item in env or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            error(f"Invalid --env '{item}', expected KEY=VALUE")
        environment[key] = value

    target = _make_target(name, opts)
    result = target.configure(name, port, environment or None, config)
    if not result["success"]:
        error(result["message"])
    log(result["message"])
    if result["requires_restart"]:
        print(f"Run [bold]clawster bot restart {name}[/bold] to apply")


@bot_app.command(name="start")
def start_bot(name: str, *, opts: TargetOptions | None = None):
    """Start the bot.

    :param name: Bot profile name
    """
    _run(_make_target(name, opts).start)


@bot_app.command(name="stop")
def stop_bot(name: str, *, opts: TargetOptions | None = None):
    """Stop the bot.

    :param name: Bot profile name
    """
    _run(_make_target(name, opts).stop)


@bot_app.command(name="restart")
def restart_bot(name: str, *, opts: TargetOptions | None = None):
    """Restart the bot so it picks up new configuration.

    :param name: Bot profile name
    """
    _run(_make_target(name, opts).restart)


@bot_app.command(name="status")
def bot_status(name: str, *, opts: TargetOptions | None = None):
    """Show the bot's state.

    :param name: Bot profile name
    """
    status = _make_target(name, opts).get_status()
    print(f"{name}: {status['state']}")
    if status.get("gateway_port"):
        print(f"  Gateway port: {status['gateway_port']}")
    if status.get("error"):
        print(f"  [red]{status['error']}[/red]")


@bot_app.command(name="endpoint")
def bot_endpoint(name: str, *, opts: TargetOptions | None = None):
    """Print the bot's gateway URL.

    :param name: Bot profile name
    """
    endpoint = _run(_make_target(name, opts).get_endpoint)
    print(f"{endpoint['protocol']}://{endpoint['host']}:{endpoint['port']}")


@bot_app.command(name="logs")
def bot_logs(
    name: str,
    *,
    lines: int = 100,
    since_minutes: int | None = None,
    opts: TargetOptions | None = None,
):
    """Print recent gateway logs.

    :param name: Bot profile name
    :param lines: Maximum number of lines
    :param since_minutes: Only show logs from the last N minutes
    """
    since = None
    if since_minutes:
        since = datetime.now(timezone.utc) - timedelta(minutes=since_minutes)
    for line in _make_target(name, opts).get_logs(lines, since):
        print(line)


@bot_app.command(name="destroy")
def destroy_bot(name: str, *, force: bool = False, opts: TargetOptions | None = None):
    """Delete every per-bot resource. Shared infrastructure is kept.

    :param name: Bot profile name
    :param force: Skip confirmation prompt
    """
    if not force:
        confirm = input(f"Destroy bot '{name}'? (yes/no): ")
        if confirm != "yes":
            log("Cancelled")
            return
    _run(_make_target(name, opts).destroy)


@bot_app.command(name="verify")
def verify_bot(name: str, *, opts: TargetOptions | None = None):
    """Check DNS (for custom domains) and HTTP reachability of the bot.

    :param name: Bot profile name
    """
    target = _make_target(name, opts)
    endpoint = _run(target.get_endpoint)

    instance_ip = None
    if isinstance(target, AwsEc2Target) and target.custom_domain:
        names = _run(derive_names, name)
        instance_id = _run(target.compute.find_instance_by_tag, names["bot"])
        instance_ip = _run(target.compute.get_instance_public_ip, instance_id) if instance_id else None
        if not instance_ip:
            warn("No running instance to compare DNS against")

    host = endpoint["host"] if endpoint["port"] in (80, 443) else f"{endpoint['host']}:{endpoint['port']}"
    issues = verify_endpoint(host, instance_ip=instance_ip, domain=getattr(target, "custom_domain", None))
    if issues:
        print("[red]Issues found:[/red]")
        for issue in issues:
            print(f"  - {issue}")
        error(f"Verification failed for '{name}'")
    print(f"[green]'{name}' is reachable[/green]")


def _network_manager(region: str | None, aws_profile: str | None) -> NetworkManager:
    session = get_session({"region": region, "aws_profile": aws_profile})
    _run(check_aws_auth, session)
    return NetworkManager(
        session.client("ec2"), session.client("iam"), session.region_name or DEFAULT_REGION
    )


@infra_app.command(name="show")
def show_infra(*, region: str | None = None, aws_profile: str | None = None):
    """Show the shared VPC/IAM bundle for a region.

    :param region: AWS region
    :param aws_profile: AWS profile name
    """
    infra = _network_manager(region, aws_profile).get_shared_infra()
    if not infra:
        print("No shared infrastructure found")
        return
    for key, value in infra.items():
        print(f"  {key}: {value}")


@infra_app.command(name="cleanup")
def cleanup_infra(*, region: str | None = None, aws_profile: str | None = None):
    """Delete the shared bundle if no bot instance still uses it.

    :param region: AWS region
    :param aws_profile: AWS profile name
    """
    deleted = _network_manager(region, aws_profile).delete_shared_infra_if_orphaned()
    if not deleted:
        log("Nothing deleted")


@stack_app.command(name="force-delete")
def force_delete_stack(
    stack_name: str,
    *,
    cluster: str,
    region: str | None = None,
    aws_profile: str | None = None,
):
    """Delete a stack stuck in DELETE_FAILED, retaining resources that block it.

    :param stack_name: CloudFormation stack name
    :param cluster: ECS cluster created by the stack
    :param region: AWS region
    :param aws_profile: AWS profile name
    """
    session = get_session({"region": region, "aws_profile": aws_profile})
    _run(check_aws_auth, session)
    service = StackCleanupService(
        StackService(session.client("cloudformation")),
        session.client("ecs"),
        AutoScalingService(session.client("autoscaling")),
        cluster_name=cluster,
        stack_name=stack_name,
    )
    _run(service.force_delete_stack)


def main():
    setup_logging()
    app()


if __name__ == "__main__":
    main()
