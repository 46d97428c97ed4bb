"""Per-bot EC2 compute: AMI lookup, launch templates, tag-discovered instances."""

import base64

from botocore.exceptions import ClientError

from ..errors import ProvisioningError, is_not_found_error
from ..types import LaunchTemplateConfig
from ..utils import log

MANAGED_TAG = "clawster:managed"
BOT_TAG = "clawster:bot"

UBUNTU_OWNER = "099720109477"  # Canonical
UBUNTU_IMAGE_NAME = "ubuntu/images/hvm-ssd/ubuntu-jammy-22.04-amd64-server-*"

NON_TERMINAL_STATES = ["pending", "running", "stopping", "stopped"]
LIVE_STATES = ("pending", "running")


class ComputeManager:
    """Compute primitives for one bot at a time.

    Instances are never recorded anywhere: they are found again by the
    ``clawster:bot`` + ``clawster:managed`` tag pair.
    """

    def __init__(self, ec2):
        self.ec2 = ec2

    def resolve_ubuntu_ami(self) -> str:
        """:return: Image id of the newest Ubuntu 22.04 amd64 AMI"""
        response = self.ec2.describe_images(
            Filters=[
                {"Name": "name", "Values": [UBUNTU_IMAGE_NAME]},
                {"Name": "state", "Values": ["available"]},
                {"Name": "architecture", "Values": ["x86_64"]},
            ],
            Owners=[UBUNTU_OWNER],
        )

        if not response.get("Images"):
            raise ProvisioningError(f"No AMI found matching pattern: '{UBUNTU_IMAGE_NAME}'")

        images = sorted(
            response["Images"], key=lambda x: x.get("CreationDate", ""), reverse=True
        )
        return images[0]["ImageId"]

    @staticmethod
    def build_launch_template_data(config: LaunchTemplateConfig) -> dict:
        # gp3 root volume and IMDSv2-only metadata are always enforced
        return {
            "ImageId": config["ami_id"],
            "InstanceType": config["instance_type"],
            "SecurityGroupIds": [config["security_group_id"]],
            "UserData": config["user_data"],
            "IamInstanceProfile": {"Arn": config["instance_profile_arn"]},
            "BlockDeviceMappings": [
                {
                    "DeviceName": "/dev/sda1",
                    "Ebs": {
                        "VolumeSize": config["boot_disk_size_gb"],
                        "VolumeType": "gp3",
                        "DeleteOnTermination": True,
                    },
                }
            ],
            "MetadataOptions": {"HttpTokens": "required", "HttpEndpoint": "enabled"},
        }

    def ensure_launch_template(self, name: str, config: LaunchTemplateConfig) -> str:
        """Create the launch template, or add a new version when it exists.

        :return: Launch template id
        """
        data = self.build_launch_template_data(config)

        existing = None
        try:
            templates = self.ec2.describe_launch_templates(LaunchTemplateNames=[name])
            existing = (templates.get("LaunchTemplates") or [None])[0]
        except ClientError as e:
            if not is_not_found_error(e):
                raise

        if existing:
            self.ec2.create_launch_template_version(
                LaunchTemplateName=name, LaunchTemplateData=data
            )
            log(f"Launch template updated: '{name}'")
            return existing["LaunchTemplateId"]

        tags = [{"Key": MANAGED_TAG, "Value": "true"}]
        tags += [{"Key": k, "Value": v} for k, v in config.get("tags", {}).items()]
        response = self.ec2.create_launch_template(
            LaunchTemplateName=name,
            LaunchTemplateData=data,
            TagSpecifications=[{"ResourceType": "launch-template", "Tags": tags}],
        )
        log(f"Launch template created: '{name}'")
        return response["LaunchTemplate"]["LaunchTemplateId"]

    def get_launch_template_user_data(self, name: str) -> str | None:
        """:return: Decoded user data of the latest version, None if the template is absent"""
        try:
            response = self.ec2.describe_launch_template_versions(
                LaunchTemplateName=name, Versions=["$Latest"]
            )
        except ClientError as e:
            if is_not_found_error(e):
                return None
            raise
        versions = response.get("LaunchTemplateVersions") or []
        encoded = versions[0].get("LaunchTemplateData", {}).get("UserData") if versions else None
        return base64.b64decode(encoded).decode() if encoded else None

    def delete_launch_template(self, name: str) -> None:
        try:
            self.ec2.delete_launch_template(LaunchTemplateName=name)
            log(f"Launch template deleted: '{name}'")
        except ClientError as e:
            if not is_not_found_error(e):
                raise
            log(f"Launch template already deleted: '{name}'")

    def run_instance(self, template_name: str, subnet_id: str, bot_name: str) -> str:
        """Launch exactly one instance from the latest template version.

        :return: Instance id
        """
        response = self.ec2.run_instances(
            LaunchTemplate={"LaunchTemplateName": template_name, "Version": "$Latest"},
            SubnetId=subnet_id,
            MinCount=1,
            MaxCount=1,
            TagSpecifications=[
                {
                    "ResourceType": "instance",
                    "Tags": [
                        {"Key": BOT_TAG, "Value": bot_name},
                        {"Key": MANAGED_TAG, "Value": "true"},
                        {"Key": "Name", "Value": f"clawster-{bot_name}"},
                    ],
                }
            ],
        )
        instances = response.get("Instances") or []
        instance_id = instances[0].get("InstanceId") if instances else None
        if not instance_id:
            raise ProvisioningError("RunInstances did not return an instance ID")

        log(f"Instance launched: '{instance_id}' (bot={bot_name})")
        return instance_id

    def terminate_instance(self, instance_id: str) -> None:
        try:
            self.ec2.terminate_instances(InstanceIds=[instance_id])
            log(f"Instance terminated: '{instance_id}'")
        except ClientError as e:
            if not is_not_found_error(e):
                raise
            log(f"Instance already gone: '{instance_id}'")

    def find_instance_by_tag(self, bot_name: str) -> str | None:
        """Find the live instance for a bot.

        Prefers pending/running over stopping/stopped so that a terminate
        racing a launch still resolves to the new instance.

        :return: Instance id, or None when the bot has no instance
        """
        response = self.ec2.describe_instances(
            Filters=[
                {"Name": f"tag:{BOT_TAG}", "Values": [bot_name]},
                {"Name": f"tag:{MANAGED_TAG}", "Values": ["true"]},
                {"Name": "instance-state-name", "Values": NON_TERMINAL_STATES},
            ]
        )
        instances = [
            instance
            for reservation in response.get("Reservations", [])
            for instance in reservation.get("Instances", [])
        ]
        if not instances:
            return None

        for instance in instances:
            if instance.get("State", {}).get("Name") in LIVE_STATES:
                return instance["InstanceId"]
        return instances[0]["InstanceId"]

    def _describe_instance(self, instance_id: str) -> dict | None:
        try:
            response = self.ec2.describe_instances(InstanceIds=[instance_id])
        except ClientError as e:
            if is_not_found_error(e):
                return None
            raise
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return instance
        return None

    def get_instance_public_ip(self, instance_id: str) -> str | None:
        instance = self._describe_instance(instance_id)
        return instance.get("PublicIpAddress") if instance else None

    def get_instance_status(self, instance_id: str) -> str:
        """:return: EC2 state name, or "no-instance" """
        instance = self._describe_instance(instance_id)
        if not instance:
            return "no-instance"
        return instance.get("State", {}).get("Name", "no-instance")
