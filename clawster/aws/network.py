"""Shared per-region network and IAM infrastructure.

One VPC/subnet/IGW/route table/security group plus an instance role and
profile serve every bot in a region. All of it is tagged
``clawster:managed=true`` and found again by that tag; nothing is stored.

``ensure_shared_infra`` reads then creates without locking, so two first
installs racing in an empty region can each create a bundle.
"""

import json
from typing import Callable

from botocore.exceptions import ClientError

from ..errors import (
    error_code,
    is_already_exists_error,
    is_duplicate_permission_error,
    is_not_found_error,
)
from ..types import SecurityGroupRule, SharedInfraIds
from ..utils import log

VPC_CIDR = "10.0.0.0/16"
SUBNET_CIDR = "10.0.1.0/24"

VPC_NAME = "clawster-vpc"
SUBNET_NAME = "clawster-subnet"
IGW_NAME = "clawster-igw"
ROUTE_TABLE_NAME = "clawster-rtb"
SECURITY_GROUP_NAME = "clawster-sg"
ROLE_NAME = "clawster-instance-role"
INSTANCE_PROFILE_NAME = "clawster-instance-profile"
INLINE_POLICY_NAME = "clawster-secrets-read"

MANAGED_TAG = {"Key": "clawster:managed", "Value": "true"}
MANAGED_FILTER = {"Name": "tag:clawster:managed", "Values": ["true"]}

EC2_TRUST_POLICY = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Principal": {"Service": "ec2.amazonaws.com"},
            "Action": "sts:AssumeRole",
        }
    ],
}


def build_secrets_read_policy(region: str) -> dict:
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Action": "secretsmanager:GetSecretValue",
                "Resource": f"arn:aws:secretsmanager:{region}:*:secret:clawster/*",
            }
        ],
    }


def _tag_spec(resource_type: str, name: str) -> list[dict]:
    return [{"ResourceType": resource_type, "Tags": [MANAGED_TAG, {"Key": "Name", "Value": name}]}]


def _has_role(profile: dict) -> bool:
    return any(r.get("RoleName") == ROLE_NAME for r in profile.get("Roles", []))


class NetworkManager:
    def __init__(self, ec2, iam, region: str):
        self.ec2 = ec2
        self.iam = iam
        self.region = region

    def ensure_shared_infra(self) -> SharedInfraIds:
        """Return the region's shared bundle, creating it if any part is missing."""
        existing = self.get_shared_infra()
        if existing:
            log("Shared infrastructure already exists")
            return existing

        log("Creating shared infrastructure...")
        vpc_id = self._create_vpc()
        igw_id = self._create_and_attach_igw(vpc_id)
        subnet_id = self._create_subnet(vpc_id)
        route_table_id = self._create_route_table(vpc_id, igw_id, subnet_id)
        sg_id = self._create_security_group(vpc_id)
        instance_profile_arn = self._ensure_iam_role_and_profile()
        log("Shared infrastructure ready")

        return {
            "vpc_id": vpc_id,
            "subnet_id": subnet_id,
            "internet_gateway_id": igw_id,
            "route_table_id": route_table_id,
            "security_group_id": sg_id,
            "instance_profile_arn": instance_profile_arn,
            "iam_role_name": ROLE_NAME,
        }

    def get_shared_infra(self) -> SharedInfraIds | None:
        """Look up the shared bundle without creating anything.

        :return: All identifiers, or None if any single part is missing
        """
        vpcs = self.ec2.describe_vpcs(
            Filters=[MANAGED_FILTER, {"Name": "tag:Name", "Values": [VPC_NAME]}]
        ).get("Vpcs", [])
        if not vpcs:
            return None
        vpc_id = vpcs[0]["VpcId"]
        vpc_filter = {"Name": "vpc-id", "Values": [vpc_id]}

        subnets = self.ec2.describe_subnets(Filters=[vpc_filter, MANAGED_FILTER]).get("Subnets", [])
        igws = self.ec2.describe_internet_gateways(
            Filters=[{"Name": "attachment.vpc-id", "Values": [vpc_id]}, MANAGED_FILTER]
        ).get("InternetGateways", [])
        route_tables = self.ec2.describe_route_tables(
            Filters=[vpc_filter, MANAGED_FILTER]
        ).get("RouteTables", [])
        sgs = self.ec2.describe_security_groups(
            Filters=[
                vpc_filter,
                {"Name": "group-name", "Values": [SECURITY_GROUP_NAME]},
                MANAGED_FILTER,
            ]
        ).get("SecurityGroups", [])
        instance_profile_arn = self._get_instance_profile_arn()

        if not (subnets and igws and route_tables and sgs and instance_profile_arn):
            return None

        return {
            "vpc_id": vpc_id,
            "subnet_id": subnets[0]["SubnetId"],
            "internet_gateway_id": igws[0]["InternetGatewayId"],
            "route_table_id": route_tables[0]["RouteTableId"],
            "security_group_id": sgs[0]["GroupId"],
            "instance_profile_arn": instance_profile_arn,
            "iam_role_name": ROLE_NAME,
        }

    def delete_shared_infra_if_orphaned(self) -> bool:
        """Tear down the shared bundle once no instance uses its VPC.

        Missing resources count as already deleted; any other error stops the
        teardown and propagates.

        :return: True if the bundle was deleted
        """
        infra = self.get_shared_infra()
        if not infra:
            return False

        reservations = self.ec2.describe_instances(
            Filters=[
                {"Name": "vpc-id", "Values": [infra["vpc_id"]]},
                {
                    "Name": "instance-state-name",
                    "Values": ["pending", "running", "stopping", "stopped"],
                },
            ]
        ).get("Reservations", [])
        instance_count = sum(len(r.get("Instances", [])) for r in reservations)
        if instance_count:
            log(f"Shared infrastructure in use by {instance_count} instance(s), skipping deletion")
            return False

        log("Deleting orphaned shared infrastructure...")
        self._delete_iam_resources()
        self._delete_network_resources(infra)
        log("Shared infrastructure deleted")
        return True

    def update_security_group_rules(self, sg_id: str, rules: list[SecurityGroupRule]) -> None:
        """Authorize tcp ingress rules one at a time; existing rules are ignored.

        AWS rejects a whole batch when any rule in it is a duplicate, so each
        rule gets its own call.
        """
        added = 0
        for rule in rules:
            try:
                self.ec2.authorize_security_group_ingress(
                    GroupId=sg_id,
                    IpPermissions=[
                        {
                            "IpProtocol": "tcp",
                            "FromPort": rule["port"],
                            "ToPort": rule["port"],
                            "IpRanges": [{"CidrIp": rule["cidr"], "Description": rule["description"]}],
                        }
                    ],
                )
                added += 1
            except ClientError as e:
                if not is_duplicate_permission_error(e):
                    raise
        if added:
            log(f"Security group '{sg_id}': added {added} ingress rule(s)")

    def _create_vpc(self) -> str:
        vpc = self.ec2.create_vpc(
            CidrBlock=VPC_CIDR, TagSpecifications=_tag_spec("vpc", VPC_NAME)
        )
        vpc_id = vpc["Vpc"]["VpcId"]
        log(f"  VPC: '{vpc_id}'")
        return vpc_id

    def _create_and_attach_igw(self, vpc_id: str) -> str:
        igw = self.ec2.create_internet_gateway(
            TagSpecifications=_tag_spec("internet-gateway", IGW_NAME)
        )
        igw_id = igw["InternetGateway"]["InternetGatewayId"]
        self.ec2.attach_internet_gateway(InternetGatewayId=igw_id, VpcId=vpc_id)
        log(f"  Internet gateway: '{igw_id}'")
        return igw_id

    def _create_subnet(self, vpc_id: str) -> str:
        availability_zone = f"{self.region}a"
        subnet = self.ec2.create_subnet(
            VpcId=vpc_id,
            CidrBlock=SUBNET_CIDR,
            AvailabilityZone=availability_zone,
            TagSpecifications=_tag_spec("subnet", SUBNET_NAME),
        )
        subnet_id = subnet["Subnet"]["SubnetId"]
        self.ec2.modify_subnet_attribute(SubnetId=subnet_id, MapPublicIpOnLaunch={"Value": True})
        log(f"  Subnet: '{subnet_id}' ({availability_zone})")
        return subnet_id

    def _create_route_table(self, vpc_id: str, igw_id: str, subnet_id: str) -> str:
        route_table = self.ec2.create_route_table(
            VpcId=vpc_id, TagSpecifications=_tag_spec("route-table", ROUTE_TABLE_NAME)
        )
        route_table_id = route_table["RouteTable"]["RouteTableId"]
        self.ec2.create_route(
            RouteTableId=route_table_id, DestinationCidrBlock="0.0.0.0/0", GatewayId=igw_id
        )
        self.ec2.associate_route_table(RouteTableId=route_table_id, SubnetId=subnet_id)
        log(f"  Route table: '{route_table_id}'")
        return route_table_id

    def _create_security_group(self, vpc_id: str) -> str:
        sg = self.ec2.create_security_group(
            GroupName=SECURITY_GROUP_NAME,
            Description="Clawster shared security group (HTTP/HTTPS)",
            VpcId=vpc_id,
            TagSpecifications=_tag_spec("security-group", SECURITY_GROUP_NAME),
        )
        sg_id = sg["GroupId"]
        self.ec2.authorize_security_group_ingress(
            GroupId=sg_id,
            IpPermissions=[
                {
                    "IpProtocol": "tcp",
                    "FromPort": 80,
                    "ToPort": 80,
                    "IpRanges": [{"CidrIp": "0.0.0.0/0", "Description": "HTTP"}],
                },
                {
                    "IpProtocol": "tcp",
                    "FromPort": 443,
                    "ToPort": 443,
                    "IpRanges": [{"CidrIp": "0.0.0.0/0", "Description": "HTTPS"}],
                },
            ],
        )
        log(f"  Security group: '{sg_id}'")
        return sg_id

    def _get_instance_profile(self) -> dict | None:
        try:
            response = self.iam.get_instance_profile(InstanceProfileName=INSTANCE_PROFILE_NAME)
        except ClientError as e:
            if is_not_found_error(e):
                return None
            raise
        return response["InstanceProfile"]

    def _get_instance_profile_arn(self) -> str | None:
        profile = self._get_instance_profile()
        return profile["Arn"] if profile else None

    def _ensure_iam_role_and_profile(self) -> str:
        """Ensure the instance role, its secrets-read policy and the profile exist.

        Each piece is created only when missing, so a teardown that stopped
        halfway is completed rather than failing on the leftovers.

        :return: Instance profile ARN
        """
        profile = self._get_instance_profile()
        if profile and _has_role(profile):
            log(f"  IAM: using existing instance profile '{INSTANCE_PROFILE_NAME}'")
            return profile["Arn"]

        try:
            self.iam.create_role(
                RoleName=ROLE_NAME,
                AssumeRolePolicyDocument=json.dumps(EC2_TRUST_POLICY),
                Description="Clawster EC2 instance role (SecretsManager read)",
                Tags=[MANAGED_TAG],
            )
            log(f"  IAM: created role '{ROLE_NAME}'")
        except ClientError as e:
            if not is_already_exists_error(e):
                raise
            log(f"  IAM: using existing role '{ROLE_NAME}'")

        # put_role_policy overwrites, so it is safe to repeat
        self.iam.put_role_policy(
            RoleName=ROLE_NAME,
            PolicyName=INLINE_POLICY_NAME,
            PolicyDocument=json.dumps(build_secrets_read_policy(self.region)),
        )

        if not profile:
            try:
                profile = self.iam.create_instance_profile(
                    InstanceProfileName=INSTANCE_PROFILE_NAME, Tags=[MANAGED_TAG]
                )["InstanceProfile"]
                log(f"  IAM: created instance profile '{INSTANCE_PROFILE_NAME}'")
            except ClientError as e:
                if not is_already_exists_error(e):
                    raise
                profile = self.iam.get_instance_profile(
                    InstanceProfileName=INSTANCE_PROFILE_NAME
                )["InstanceProfile"]

        if not _has_role(profile):
            try:
                self.iam.add_role_to_instance_profile(
                    InstanceProfileName=INSTANCE_PROFILE_NAME, RoleName=ROLE_NAME
                )
            except ClientError as e:
                # a profile holds one role; another installer got there first
                if error_code(e) != "LimitExceeded":
                    raise
        return profile["Arn"]

    def _safe_delete(self, description: str, fn: Callable[[], object]) -> None:
        try:
            fn()
            log(f"  Deleted: {description}")
        except ClientError as e:
            if not is_not_found_error(e):
                raise
            log(f"  Already gone: {description}")

    def _delete_iam_resources(self) -> None:
        self._safe_delete(
            "role from instance profile",
            lambda: self.iam.remove_role_from_instance_profile(
                InstanceProfileName=INSTANCE_PROFILE_NAME, RoleName=ROLE_NAME
            ),
        )
        self._safe_delete(
            "instance profile",
            lambda: self.iam.delete_instance_profile(InstanceProfileName=INSTANCE_PROFILE_NAME),
        )
        self._safe_delete(
            "role policy",
            lambda: self.iam.delete_role_policy(RoleName=ROLE_NAME, PolicyName=INLINE_POLICY_NAME),
        )
        self._safe_delete("IAM role", lambda: self.iam.delete_role(RoleName=ROLE_NAME))

    def _delete_network_resources(self, infra: SharedInfraIds) -> None:
        self._safe_delete(
            "security group",
            lambda: self.ec2.delete_security_group(GroupId=infra["security_group_id"]),
        )

        try:
            route_tables = self.ec2.describe_route_tables(
                RouteTableIds=[infra["route_table_id"]]
            ).get("RouteTables", [])
        except ClientError as e:
            if not is_not_found_error(e):
                raise
            route_tables = []
        for association in (route_tables[0].get("Associations", []) if route_tables else []):
            association_id = association.get("RouteTableAssociationId")
            if association_id and not association.get("Main"):
                self._safe_delete(
                    f"route table association '{association_id}'",
                    lambda: self.ec2.disassociate_route_table(AssociationId=association_id),
                )
        self._safe_delete(
            "route table",
            lambda: self.ec2.delete_route_table(RouteTableId=infra["route_table_id"]),
        )
        self._safe_delete("subnet", lambda: self.ec2.delete_subnet(SubnetId=infra["subnet_id"]))
        self._safe_delete(
            "internet gateway attachment",
            lambda: self.ec2.detach_internet_gateway(
                InternetGatewayId=infra["internet_gateway_id"], VpcId=infra["vpc_id"]
            ),
        )
        self._safe_delete(
            "internet gateway",
            lambda: self.ec2.delete_internet_gateway(InternetGatewayId=infra["internet_gateway_id"]),
        )
        self._safe_delete("VPC", lambda: self.ec2.delete_vpc(VpcId=infra["vpc_id"]))
