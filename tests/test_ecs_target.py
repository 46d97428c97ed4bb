"""EcsEc2Target against mocked ECS, EC2, secret and log clients."""

import json
from unittest.mock import MagicMock, call

import pytest

from clawster.aws.ecs_target import EcsEc2Target
from clawster.errors import EndpointUnavailableError, ProfileNotSetError

CONFIG = {
    "region": "us-east-1",
    "cluster_name": "bots",
    "subnet_ids": ["subnet-a", "subnet-b"],
    "security_group_id": "sg-9",
}


@pytest.fixture
def ecs():
    return MagicMock()


@pytest.fixture
def ec2():
    return MagicMock()


@pytest.fixture
def secrets():
    return MagicMock()


@pytest.fixture
def logs():
    return MagicMock()


@pytest.fixture
def make_target(ecs, ec2, secrets, logs):
    def _make(**overrides):
        return EcsEc2Target({**CONFIG, **overrides}, ecs=ecs, ec2=ec2, secrets=secrets, logs=logs)

    return _make


@pytest.fixture
def target(make_target):
    return make_target(profile_name="My Bot")


def test_derive_names():
    assert EcsEc2Target.derive_names("My Bot 123!") == {
        "service": "openclaw-my-bot-123",
        "family": "openclaw-my-bot-123",
        "log_group": "/ecs/openclaw-my-bot-123",
        "secret": "openclaw/my-bot-123/config",
    }


class TestInstall:
    def test_creates_resources_in_order(self, make_target, ecs, logs):
        parent = MagicMock()
        parent.attach_mock(ecs.create_cluster, "create_cluster")
        parent.attach_mock(logs.create_log_group, "create_log_group")
        parent.attach_mock(ecs.register_task_definition, "register_task_definition")
        parent.attach_mock(ecs.create_service, "create_service")

        result = make_target().install("my-bot", 18789)

        assert [c[0] for c in parent.mock_calls] == [
            "create_cluster",
            "create_log_group",
            "register_task_definition",
            "create_service",
        ]
        assert result == {
            "success": True,
            "instance_id": "openclaw-my-bot",
            "service_name": "openclaw-my-bot",
            "message": "ECS EC2 service 'openclaw-my-bot' created on cluster 'bots'",
        }

    def test_service_network_configuration(self, make_target, ecs):
        make_target().install("my-bot", 18789)

        kwargs = ecs.create_service.call_args.kwargs
        assert kwargs["cluster"] == "bots"
        assert kwargs["desiredCount"] == 1
        assert kwargs["launchType"] == "EC2"
        assert kwargs["networkConfiguration"]["awsvpcConfiguration"] == {
            "subnets": ["subnet-a", "subnet-b"],
            "securityGroups": ["sg-9"],
            "assignPublicIp": "ENABLED",
        }

    def test_task_definition(self, make_target, ecs):
        make_target(execution_role_arn="arn:exec").install("my-bot", 8080, "v2.0.0")

        params = ecs.register_task_definition.call_args.kwargs
        assert params["family"] == "openclaw-my-bot"
        assert params["networkMode"] == "awsvpc"
        assert params["requiresCompatibilities"] == ["EC2"]
        assert params["cpu"] == "1024"
        assert params["memory"] == "2048"
        assert params["executionRoleArn"] == "arn:exec"
        assert "taskRoleArn" not in params
        container = params["containerDefinitions"][0]
        assert container["image"] == "ghcr.io/openclaw/openclaw:v2.0.0"
        assert container["portMappings"] == [{"containerPort": 8080, "protocol": "tcp"}]
        assert container["logConfiguration"]["options"]["awslogs-group"] == "/ecs/openclaw-my-bot"

    def test_config_secret_written_to_config_file(self, make_target, ecs):
        make_target().install("my-bot", 8080)

        container = ecs.register_task_definition.call_args.kwargs["containerDefinitions"][0]
        assert container["secrets"] == [
            {"name": "OPENCLAW_CONFIG", "valueFrom": "openclaw/my-bot/config"}
        ]
        assert container["entryPoint"] == ["sh", "-c"]
        (script,) = container["command"]
        assert "printenv OPENCLAW_CONFIG > ~/.openclaw/openclaw.json" in script
        assert script.endswith("exec openclaw gateway --port 8080 --verbose")

    def test_placeholder_secret_created_before_task(self, make_target, ecs, secrets):
        secrets.secret_exists.return_value = False
        parent = MagicMock()
        parent.attach_mock(secrets.create_secret, "create_secret")
        parent.attach_mock(ecs.register_task_definition, "register_task_definition")

        make_target().install("my-bot", 18789)

        assert parent.mock_calls[0] == call.create_secret("openclaw/my-bot/config", "{}")
        assert parent.mock_calls[1][0] == "register_task_definition"

    def test_existing_secret_kept(self, make_target, secrets):
        secrets.secret_exists.return_value = True
        make_target().install("my-bot", 18789)
        secrets.create_secret.assert_not_called()

    @pytest.mark.parametrize(
        "image, version, expected",
        [
            (None, None, "ghcr.io/openclaw/openclaw:latest"),
            ("registry:5000/bot", None, "registry:5000/bot:latest"),
            ("registry:5000/bot:pinned", "v1", "registry:5000/bot:pinned"),
        ],
    )
    def test_image_tag(self, make_target, ecs, image, version, expected):
        make_target(image=image).install("my-bot", 18789, version)

        container = ecs.register_task_definition.call_args.kwargs["containerDefinitions"][0]
        assert container["image"] == expected

    def test_log_group_failure_ignored(self, make_target, ecs, logs):
        logs.create_log_group.side_effect = RuntimeError("denied")

        result = make_target().install("my-bot", 18789)

        assert result["success"] is True
        ecs.create_service.assert_called_once()

    def test_failure_returned(self, make_target, ecs):
        ecs.register_task_definition.side_effect = RuntimeError("bad cpu")

        result = make_target().install("my-bot", 18789)

        assert result["success"] is False
        assert result["message"] == "ECS EC2 install failed: bad cpu"
        ecs.create_service.assert_not_called()


class TestConfigure:
    def test_creates_secret(self, make_target, secrets):
        result = make_target().configure("my-bot", 18789, config={"gateway": {"port": 1}})

        secrets.create_secret.assert_called_once()
        name, value = secrets.create_secret.call_args.args
        assert name == "openclaw/my-bot/config"
        assert json.loads(value) == {"gateway": {"bind": "lan"}}
        assert result == {
            "success": True,
            "requires_restart": True,
            "message": "Configuration stored in Secrets Manager as 'openclaw/my-bot/config'",
        }

    def test_falls_back_to_update(self, make_target, secrets, client_error):
        secrets.create_secret.side_effect = client_error("ResourceExistsException")

        result = make_target().configure("my-bot", 18789, config={})

        assert result["success"] is True
        name, value = secrets.update_secret.call_args.args
        assert name == "openclaw/my-bot/config"
        assert json.loads(value) == {"gateway": {"bind": "lan"}}

    def test_environment_merged(self, make_target, secrets):
        make_target().configure(
            "my-bot", 18789, environment={"B": "2"}, config={"env": {"A": "1"}}
        )

        value = secrets.create_secret.call_args.args[1]
        assert json.loads(value)["env"] == {"A": "1", "B": "2"}

    def test_config_transformed(self, make_target, secrets):
        config = {
            "gateway": {"host": "localhost", "port": 12345, "auth": {"token": "abc"}},
            "sandbox": {"mode": "off"},
            "channels": {"telegram": {"enabled": True, "botToken": "t"}},
            "skills": {"allowUnverified": True},
        }

        make_target().configure("my-bot", 18789, config=config)

        stored = json.loads(secrets.create_secret.call_args.args[1])
        assert stored == {
            "gateway": {"bind": "lan", "auth": {"token": "abc"}},
            "agents": {"defaults": {"sandbox": {"mode": "off"}}},
            "channels": {"telegram": {"botToken": "t"}},
            "skills": {},
        }
        assert config["gateway"]["host"] == "localhost"

    def test_failure_returned(self, make_target, secrets):
        secrets.create_secret.side_effect = RuntimeError("exists")
        secrets.update_secret.side_effect = RuntimeError("denied")

        result = make_target().configure("my-bot", 18789, config={})

        assert result == {
            "success": False,
            "requires_restart": False,
            "message": "Failed to store config: denied",
        }


class TestLifecycle:
    def test_start(self, target, ecs):
        target.start()
        ecs.update_service.assert_called_once_with(
            cluster="bots", service="openclaw-my-bot", desiredCount=1
        )

    def test_stop(self, target, ecs):
        target.stop()
        ecs.update_service.assert_called_once_with(
            cluster="bots", service="openclaw-my-bot", desiredCount=0
        )

    def test_restart_forces_deployment(self, target, ecs):
        target.restart()
        ecs.update_service.assert_called_once_with(
            cluster="bots", service="openclaw-my-bot", forceNewDeployment=True
        )

    def test_errors_propagate(self, target, ecs, client_error):
        ecs.update_service.side_effect = client_error("ServiceNotFoundException")
        with pytest.raises(Exception):
            target.start()

    @pytest.mark.parametrize("method", ["start", "stop", "restart", "get_endpoint", "destroy"])
    def test_requires_profile(self, make_target, method):
        with pytest.raises(ProfileNotSetError):
            getattr(make_target(), method)()


class TestStatus:
    def _services(self, ecs, *services):
        ecs.describe_services.return_value = {"services": list(services)}

    def test_without_profile(self, make_target):
        assert make_target().get_status() == {"state": "not-installed"}

    def test_running(self, target, ecs):
        self._services(ecs, {"status": "ACTIVE", "runningCount": 1, "desiredCount": 1})
        assert target.get_status() == {"state": "running", "gateway_port": 18789}

    def test_stopped(self, target, ecs):
        self._services(ecs, {"status": "ACTIVE", "runningCount": 0, "desiredCount": 0})
        assert target.get_status() == {"state": "stopped"}

    def test_starting_is_error(self, target, ecs):
        self._services(ecs, {"status": "ACTIVE", "runningCount": 0, "desiredCount": 1})
        assert target.get_status() == {
            "state": "error",
            "error": "Service status: ACTIVE, running: 0/1",
        }

    def test_inactive_is_not_installed(self, target, ecs):
        self._services(ecs, {"status": "INACTIVE", "runningCount": 0, "desiredCount": 0})
        assert target.get_status() == {"state": "not-installed"}

    def test_lookup_failure_is_not_installed(self, target, ecs):
        ecs.describe_services.side_effect = RuntimeError("boom")
        assert target.get_status() == {"state": "not-installed"}


class TestEndpoint:
    def _task(self, ecs, details):
        ecs.list_tasks.return_value = {"taskArns": ["arn:task/1"]}
        ecs.describe_tasks.return_value = {
            "tasks": [{"attachments": [{"type": "ElasticNetworkInterface", "details": details}]}]
        }

    def test_resolves_public_ip(self, target, ecs, ec2):
        self._task(ecs, [{"name": "subnetId", "value": "subnet-a"}, {"name": "networkInterfaceId", "value": "eni-1"}])
        ec2.describe_network_interfaces.return_value = {
            "NetworkInterfaces": [{"Association": {"PublicIp": "3.3.3.3"}}]
        }

        assert target.get_endpoint() == {"host": "3.3.3.3", "port": 18789, "protocol": "ws"}
        ecs.list_tasks.assert_called_once_with(
            cluster="bots", serviceName="openclaw-my-bot", desiredStatus="RUNNING"
        )
        ec2.describe_network_interfaces.assert_called_once_with(NetworkInterfaceIds=["eni-1"])

    def test_no_tasks(self, target, ecs):
        ecs.list_tasks.return_value = {"taskArns": []}
        with pytest.raises(EndpointUnavailableError, match="no running tasks"):
            target.get_endpoint()

    def test_no_interface(self, target, ecs):
        self._task(ecs, [{"name": "subnetId", "value": "subnet-a"}])
        with pytest.raises(EndpointUnavailableError, match="no network interface"):
            target.get_endpoint()

    def test_no_public_ip(self, target, ecs, ec2):
        self._task(ecs, [{"name": "networkInterfaceId", "value": "eni-1"}])
        ec2.describe_network_interfaces.return_value = {"NetworkInterfaces": [{}]}
        with pytest.raises(EndpointUnavailableError, match="eni-1"):
            target.get_endpoint()


class TestLogs:
    def test_reads_service_log_group(self, target, logs):
        logs.get_logs.return_value = [{"timestamp": 0, "message": "hi"}]

        assert target.get_logs(lines=5) == ["[1970-01-01T00:00:00.000Z] hi"]
        logs.get_logs.assert_called_once_with("/ecs/openclaw-my-bot", limit=5, start_time=None)

    def test_failure_returns_empty(self, target, logs):
        logs.get_logs.side_effect = RuntimeError("gone")
        assert target.get_logs() == []


class TestDestroy:
    def test_full_teardown(self, target, ecs, secrets, logs):
        ecs.get_paginator.return_value.paginate.return_value = [
            {"taskDefinitionArns": ["arn:td:1", "arn:td:2"]},
            {"taskDefinitionArns": ["arn:td:3"]},
        ]

        target.destroy()

        assert ecs.update_service.call_args == call(
            cluster="bots", service="openclaw-my-bot", desiredCount=0
        )
        ecs.delete_service.assert_called_once_with(
            cluster="bots", service="openclaw-my-bot", force=True
        )
        ecs.get_paginator.assert_called_once_with("list_task_definitions")
        ecs.get_paginator.return_value.paginate.assert_called_once_with(familyPrefix="openclaw-my-bot")
        assert ecs.deregister_task_definition.call_args_list == [
            call(taskDefinition="arn:td:1"),
            call(taskDefinition="arn:td:2"),
            call(taskDefinition="arn:td:3"),
        ]
        secrets.delete_secret.assert_called_once_with("openclaw/my-bot/config", force=True)
        logs.delete_log_group.assert_called_once_with("/ecs/openclaw-my-bot")

    def test_continues_past_failures(self, target, ecs, secrets, logs):
        ecs.update_service.side_effect = RuntimeError("a")
        ecs.delete_service.side_effect = RuntimeError("b")
        ecs.get_paginator.return_value.paginate.side_effect = RuntimeError("c")
        secrets.delete_secret.side_effect = RuntimeError("d")

        target.destroy()

        ecs.deregister_task_definition.assert_not_called()
        secrets.delete_secret.assert_called_once()
        logs.delete_log_group.assert_called_once()
