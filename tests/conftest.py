"""Shared fixtures: ClientError factory and an in-memory EC2/IAM backend."""

import itertools
import threading
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError


def pytest_addoption(parser):
    parser.addoption(
        "--integration",
        action="store_true",
        default=False,
        help="Run integration tests that create real AWS resources",
    )
    parser.addoption(
        "--region",
        default="us-east-1",
        help="AWS region for integration tests (default: us-east-1)",
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--integration"):
        return
    skip = pytest.mark.skip(reason="needs --integration")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


def make_client_error(code: str, operation: str = "Operation", message: str = "") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message or code}}, operation)


@pytest.fixture
def client_error():
    return make_client_error


@pytest.fixture
def region(request):
    return request.config.getoption("--region")


def _tags(spec: list[dict] | None) -> list[dict]:
    return list(spec[0]["Tags"]) if spec else []


def _matches(resource: dict, filters: list[dict] | None, fields: dict[str, str]) -> bool:
    for f in filters or []:
        name, values = f["Name"], f["Values"]
        if name.startswith("tag:"):
            key = name[4:]
            if not any(t["Key"] == key and t["Value"] in values for t in resource.get("Tags", [])):
                return False
        elif name in fields:
            if resource.get(fields[name]) not in values:
                return False
        else:
            raise AssertionError(f"Unsupported filter: {name}")
    return True


class FakeEc2:
    """Just enough of the EC2 API for shared-infra tests.

    Every call name is appended to ``calls``; ``describe_vpcs_hook`` runs after
    describe_vpcs has taken its snapshot and before it returns.
    """

    def __init__(self):
        self.calls = []
        self.describe_vpcs_hook = None
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self.vpcs = []
        self.subnets = []
        self.igws = []
        self.route_tables = []
        self.security_groups = []
        self.instances = []

    def _id(self, prefix: str) -> str:
        with self._lock:
            return f"{prefix}-{next(self._ids):04d}"

    def _record(self, name: str) -> None:
        with self._lock:
            self.calls.append(name)

    def create_calls(self) -> list[str]:
        return [c for c in self.calls if c.startswith(("create_", "attach_", "associate_", "authorize_"))]

    def delete_calls(self) -> list[str]:
        return [c for c in self.calls if c.startswith(("delete_", "detach_", "disassociate_"))]

    def describe_vpcs(self, Filters=None):
        self._record("describe_vpcs")
        vpcs = [v for v in self.vpcs if _matches(v, Filters, {})]
        if self.describe_vpcs_hook:
            self.describe_vpcs_hook()
        return {"Vpcs": vpcs}

    def create_vpc(self, CidrBlock, TagSpecifications=None):
        self._record("create_vpc")
        vpc = {"VpcId": self._id("vpc"), "CidrBlock": CidrBlock, "Tags": _tags(TagSpecifications)}
        self.vpcs.append(vpc)
        return {"Vpc": vpc}

    def create_internet_gateway(self, TagSpecifications=None):
        self._record("create_internet_gateway")
        igw = {"InternetGatewayId": self._id("igw"), "Tags": _tags(TagSpecifications), "VpcId": None}
        self.igws.append(igw)
        return {"InternetGateway": igw}

    def attach_internet_gateway(self, InternetGatewayId, VpcId):
        self._record("attach_internet_gateway")
        for igw in self.igws:
            if igw["InternetGatewayId"] == InternetGatewayId:
                igw["VpcId"] = VpcId

    def describe_internet_gateways(self, Filters=None):
        self._record("describe_internet_gateways")
        return {
            "InternetGateways": [
                i for i in self.igws if _matches(i, Filters, {"attachment.vpc-id": "VpcId"})
            ]
        }

    def create_subnet(self, VpcId, CidrBlock, AvailabilityZone, TagSpecifications=None):
        self._record("create_subnet")
        subnet = {
            "SubnetId": self._id("subnet"),
            "VpcId": VpcId,
            "CidrBlock": CidrBlock,
            "AvailabilityZone": AvailabilityZone,
            "Tags": _tags(TagSpecifications),
        }
        self.subnets.append(subnet)
        return {"Subnet": subnet}

    def modify_subnet_attribute(self, SubnetId, MapPublicIpOnLaunch):
        self._record("modify_subnet_attribute")

    def describe_subnets(self, Filters=None):
        self._record("describe_subnets")
        return {"Subnets": [s for s in self.subnets if _matches(s, Filters, {"vpc-id": "VpcId"})]}

    def create_route_table(self, VpcId, TagSpecifications=None):
        self._record("create_route_table")
        rtb = {
            "RouteTableId": self._id("rtb"),
            "VpcId": VpcId,
            "Tags": _tags(TagSpecifications),
            "Associations": [],
        }
        self.route_tables.append(rtb)
        return {"RouteTable": rtb}

    def create_route(self, RouteTableId, DestinationCidrBlock, GatewayId):
        self._record("create_route")

    def associate_route_table(self, RouteTableId, SubnetId):
        self._record("associate_route_table")
        association_id = self._id("rtbassoc")
        for rtb in self.route_tables:
            if rtb["RouteTableId"] == RouteTableId:
                rtb["Associations"].append(
                    {"RouteTableAssociationId": association_id, "SubnetId": SubnetId, "Main": False}
                )
        return {"AssociationId": association_id}

    def describe_route_tables(self, Filters=None, RouteTableIds=None):
        self._record("describe_route_tables")
        tables = [r for r in self.route_tables if _matches(r, Filters, {"vpc-id": "VpcId"})]
        if RouteTableIds is not None:
            tables = [r for r in tables if r["RouteTableId"] in RouteTableIds]
        return {"RouteTables": tables}

    def disassociate_route_table(self, AssociationId):
        self._record("disassociate_route_table")
        for rtb in self.route_tables:
            rtb["Associations"] = [
                a for a in rtb["Associations"] if a["RouteTableAssociationId"] != AssociationId
            ]

    def create_security_group(self, GroupName, Description, VpcId, TagSpecifications=None):
        self._record("create_security_group")
        sg = {
            "GroupId": self._id("sg"),
            "GroupName": GroupName,
            "VpcId": VpcId,
            "Tags": _tags(TagSpecifications),
            "IpPermissions": [],
        }
        self.security_groups.append(sg)
        return {"GroupId": sg["GroupId"]}

    def authorize_security_group_ingress(self, GroupId, IpPermissions):
        self._record("authorize_security_group_ingress")
        for sg in self.security_groups:
            if sg["GroupId"] == GroupId:
                sg["IpPermissions"].extend(IpPermissions)

    def describe_security_groups(self, Filters=None):
        self._record("describe_security_groups")
        return {
            "SecurityGroups": [
                s
                for s in self.security_groups
                if _matches(s, Filters, {"vpc-id": "VpcId", "group-name": "GroupName"})
            ]
        }

    def describe_instances(self, Filters=None):
        self._record("describe_instances")
        matched = [
            i
            for i in self.instances
            if _matches(i, Filters, {"vpc-id": "VpcId", "instance-state-name": "StateName"})
        ]
        return {"Reservations": [{"Instances": matched}] if matched else []}

    def _delete(self, name: str, collection: list, key: str, value: str) -> None:
        self._record(name)
        for item in collection:
            if item[key] == value:
                collection.remove(item)
                return
        raise make_client_error(f"Invalid{key}.NotFound", name)

    def delete_security_group(self, GroupId):
        self._delete("delete_security_group", self.security_groups, "GroupId", GroupId)

    def delete_route_table(self, RouteTableId):
        self._delete("delete_route_table", self.route_tables, "RouteTableId", RouteTableId)

    def delete_subnet(self, SubnetId):
        self._delete("delete_subnet", self.subnets, "SubnetId", SubnetId)

    def detach_internet_gateway(self, InternetGatewayId, VpcId):
        self._record("detach_internet_gateway")
        for igw in self.igws:
            if igw["InternetGatewayId"] == InternetGatewayId:
                igw["VpcId"] = None

    def delete_internet_gateway(self, InternetGatewayId):
        self._delete("delete_internet_gateway", self.igws, "InternetGatewayId", InternetGatewayId)

    def delete_vpc(self, VpcId):
        self._delete("delete_vpc", self.vpcs, "VpcId", VpcId)


class FakeIam:
    def __init__(self):
        self.calls = []
        self.roles = {}
        self.profiles = {}

    def get_instance_profile(self, InstanceProfileName):
        self.calls.append("get_instance_profile")
        if InstanceProfileName not in self.profiles:
            raise make_client_error("NoSuchEntity", "GetInstanceProfile")
        return {"InstanceProfile": self.profiles[InstanceProfileName]}

    def create_role(self, RoleName, AssumeRolePolicyDocument, Description, Tags):
        self.calls.append("create_role")
        if RoleName in self.roles:
            raise make_client_error("EntityAlreadyExists", "CreateRole")
        self.roles[RoleName] = {"RoleName": RoleName, "Policies": {}}

    def put_role_policy(self, RoleName, PolicyName, PolicyDocument):
        self.calls.append("put_role_policy")
        self.roles[RoleName]["Policies"][PolicyName] = PolicyDocument

    def create_instance_profile(self, InstanceProfileName, Tags):
        self.calls.append("create_instance_profile")
        if InstanceProfileName in self.profiles:
            raise make_client_error("EntityAlreadyExists", "CreateInstanceProfile")
        profile = {
            "InstanceProfileName": InstanceProfileName,
            "Arn": f"arn:aws:iam::123456789012:instance-profile/{InstanceProfileName}",
            "Roles": [],
        }
        self.profiles[InstanceProfileName] = profile
        return {"InstanceProfile": profile}

    def add_role_to_instance_profile(self, InstanceProfileName, RoleName):
        self.calls.append("add_role_to_instance_profile")
        if self.profiles[InstanceProfileName]["Roles"]:
            raise make_client_error("LimitExceeded", "AddRoleToInstanceProfile")
        self.profiles[InstanceProfileName]["Roles"].append({"RoleName": RoleName})

    def remove_role_from_instance_profile(self, InstanceProfileName, RoleName):
        self.calls.append("remove_role_from_instance_profile")
        if InstanceProfileName not in self.profiles:
            raise make_client_error("NoSuchEntity", "RemoveRoleFromInstanceProfile")
        self.profiles[InstanceProfileName]["Roles"].remove({"RoleName": RoleName})

    def delete_instance_profile(self, InstanceProfileName):
        self.calls.append("delete_instance_profile")
        if self.profiles.pop(InstanceProfileName, None) is None:
            raise make_client_error("NoSuchEntity", "DeleteInstanceProfile")

    def delete_role_policy(self, RoleName, PolicyName):
        self.calls.append("delete_role_policy")
        if RoleName not in self.roles or self.roles[RoleName]["Policies"].pop(PolicyName, None) is None:
            raise make_client_error("NoSuchEntity", "DeleteRolePolicy")

    def delete_role(self, RoleName):
        self.calls.append("delete_role")
        if self.roles.pop(RoleName, None) is None:
            raise make_client_error("NoSuchEntity", "DeleteRole")


@pytest.fixture
def fake_ec2():
    return FakeEc2()


@pytest.fixture
def fake_iam():
    return FakeIam()


@pytest.fixture
def mock_compute():
    compute = MagicMock()
    compute.resolve_ubuntu_ami.return_value = "ami-latest"
    compute.ensure_launch_template.return_value = "lt-0123"
    compute.find_instance_by_tag.return_value = None
    compute.run_instance.return_value = "i-new"
    compute.get_instance_status.return_value = "running"
    compute.get_instance_public_ip.return_value = "54.1.2.3"
    compute.get_launch_template_user_data.return_value = None
    return compute


@pytest.fixture
def mock_network():
    network = MagicMock()
    infra = {
        "vpc_id": "vpc-1",
        "subnet_id": "subnet-1",
        "internet_gateway_id": "igw-1",
        "route_table_id": "rtb-1",
        "security_group_id": "sg-1",
        "instance_profile_arn": "arn:aws:iam::123:instance-profile/clawster-instance-profile",
        "iam_role_name": "clawster-instance-role",
    }
    network.ensure_shared_infra.return_value = infra
    network.get_shared_infra.return_value = infra
    return network
