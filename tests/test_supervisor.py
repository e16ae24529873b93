"""Tests for the process supervisor client (pm2 and supervisord backends)."""

from __future__ import annotations

import json

import pytest

from hookdeploy.config import SupervisorConfig, TargetHost
from hookdeploy.errors import RemoteCommandError
from hookdeploy.pipeline.models import SupervisorDirective
from hookdeploy.remote import CommandResult
from hookdeploy.supervisor import (
    Pm2Backend,
    ProcessSupervisorClient,
    SupervisordBackend,
    make_backend,
    observed_state,
)


# ── Fakes ────────────────────────────────────────────────────────────────────


class FakeExecutor:
    """Answers describe commands from a script and records everything else."""

    def __init__(self, describe_outputs: list[str], *, fail_on: str | None = None):
        self.describe_outputs = list(describe_outputs)
        self.fail_on = fail_on
        self.commands: list[str] = []
        self.envs: list[dict | None] = []

    async def run_command(self, target, command, *, timeout, env=None):
        if command.endswith(" jlist") or " status " in command:
            return CommandResult(0, self.describe_outputs.pop(0))
        self.commands.append(command)
        self.envs.append(env)
        if self.fail_on and self.fail_on in command:
            return CommandResult(1, "", f"{self.fail_on}: failed")
        return CommandResult(0, f"ran {command}\n")


def pm2_list(*procs: tuple[str, str]) -> str:
    return json.dumps(
        [
            {
                "name": name,
                "pid": 4242 if status == "online" else 0,
                "pm2_env": {"status": status, "restart_time": 3, "pm_uptime": 1767225600000},
            }
            for name, status in procs
        ]
    )


@pytest.fixture
def target():
    return TargetHost(name="web1", host="web1.example.com", credential="deploy")


def make_client(outputs, config: SupervisorConfig | None = None, **kwargs):
    executor = FakeExecutor(outputs, **kwargs)
    return ProcessSupervisorClient(executor, config or SupervisorConfig()), executor


# ── pm2 ──────────────────────────────────────────────────────────────────────


class TestPm2Describe:
    async def test_running_process(self, target):
        client, _ = make_client([pm2_list(("other", "stopped"), ("web", "online"))])
        desc = await client.describe(target, "web")
        assert desc.observed_state == "running"
        assert desc.native_state == "online"
        assert desc.pid == 4242
        assert desc.restart_count == 3
        assert desc.last_restart_at is not None
        assert desc.exists and desc.running

    async def test_absent_process(self, target):
        client, _ = make_client([pm2_list(("other", "online"))])
        desc = await client.describe(target, "web")
        assert desc.observed_state == "absent"
        assert not desc.exists

    async def test_notice_before_json(self, target):
        client, _ = make_client(["pm2 update available\n" + pm2_list(("web", "errored"))])
        desc = await client.describe(target, "web")
        assert desc.observed_state == "errored"

    async def test_daemon_spawn_banner(self, target):
        banner = "[PM2] Spawning PM2 daemon with pm2_home=/home/ubuntu/.pm2\n"
        banner += "[PM2] PM2 Successfully daemonized\n"
        client, _ = make_client([banner + "[]", banner + pm2_list(("web", "online"))])
        assert not (await client.describe(target, "web")).exists
        assert (await client.describe(target, "web")).running

    async def test_first_deploy_restart_through_banner(self, target):
        banner = "[PM2] Spawning PM2 daemon with pm2_home=/root/.pm2\n"
        client, executor = make_client([banner + "[]", pm2_list(("pythonapp", "online"))])
        outcome = await client.apply(
            target, "pythonapp", SupervisorDirective.RESTART, "app.py", interpreter="python3"
        )
        assert outcome.action == "started"
        assert executor.commands[0].startswith("pm2 start app.py --name pythonapp")

    async def test_unparseable_output(self, target):
        client, _ = make_client(["[not json"])
        with pytest.raises(RemoteCommandError, match="Unparseable"):
            await client.describe(target, "web")


class TestPm2Directives:
    async def test_start_when_running_is_noop(self, target):
        client, executor = make_client([pm2_list(("web", "online"))])
        outcome = await client.apply(target, "web", SupervisorDirective.START, "app.js")
        assert outcome.action == "noop"
        assert executor.commands == []
        assert outcome.descriptor.desired_state == "running"

    async def test_stop_when_absent_is_noop(self, target):
        client, executor = make_client([pm2_list()])
        outcome = await client.apply(target, "web", SupervisorDirective.STOP)
        assert outcome.action == "noop"
        assert executor.commands == []
        assert outcome.descriptor.observed_state == "absent"

    async def test_stop_if_running_stopped(self, target):
        client, executor = make_client([pm2_list(("web", "stopped"))])
        outcome = await client.apply(target, "web", SupervisorDirective.STOP_IF_RUNNING)
        assert outcome.action == "noop"
        assert executor.commands == []

    async def test_stop_running(self, target):
        client, executor = make_client([pm2_list(("web", "online")), pm2_list(("web", "stopped"))])
        outcome = await client.apply(target, "web", SupervisorDirective.STOP)
        assert outcome.action == "stopped"
        assert executor.commands == ["pm2 stop web"]
        assert outcome.descriptor.observed_state == "stopped"
        assert outcome.descriptor.desired_state == "stopped"

    async def test_restart_absent_starts(self, target):
        client, executor = make_client([pm2_list(), pm2_list(("web", "online"))])
        outcome = await client.apply(
            target,
            "web",
            SupervisorDirective.RESTART,
            "app.js",
            ["--port", "8080"],
            interpreter="node",
            env={"NODE_ENV": "production"},
        )
        assert outcome.action == "started"
        assert executor.commands == [
            "pm2 start app.js --name web --interpreter node --max-restarts 10 -- --port 8080"
        ]
        assert executor.envs == [{"NODE_ENV": "production"}]
        assert outcome.descriptor.running

    async def test_restart_existing(self, target):
        client, executor = make_client([pm2_list(("web", "errored")), pm2_list(("web", "online"))])
        outcome = await client.apply(target, "web", SupervisorDirective.RESTART, "app.js")
        assert outcome.action == "restarted"
        assert executor.commands == ["pm2 restart web --update-env"]

    async def test_start_stopped_replaces_entry(self, target):
        client, executor = make_client([pm2_list(("web", "stopped")), pm2_list(("web", "online"))])
        outcome = await client.apply(target, "web", SupervisorDirective.START, "app.js")
        assert outcome.action == "started"
        assert executor.commands[0] == "pm2 delete web"
        assert executor.commands[1].startswith("pm2 start app.js --name web")

    async def test_no_autorestart_and_persist(self, target):
        config = SupervisorConfig(autorestart=False, persist=True, binary="/opt/pm2")
        client, executor = make_client([pm2_list(), pm2_list(("web", "online"))], config)
        await client.apply(target, "web", SupervisorDirective.START, "app.js")
        assert executor.commands == [
            "/opt/pm2 start app.js --name web --no-autorestart",
            "/opt/pm2 save",
        ]

    async def test_start_without_command(self, target):
        client, _ = make_client([pm2_list()])
        with pytest.raises(RemoteCommandError, match="no command was given"):
            await client.apply(target, "web", SupervisorDirective.START)

    async def test_failed_command(self, target):
        client, _ = make_client([pm2_list(("web", "online"))], fail_on="pm2 stop")
        with pytest.raises(RemoteCommandError, match="Supervisor command failed") as exc_info:
            await client.apply(target, "web", SupervisorDirective.STOP)
        assert exc_info.value.target == "web1"
        assert exc_info.value.exit_code == 1


# ── supervisord ──────────────────────────────────────────────────────────────


class TestSupervisord:
    @pytest.fixture
    def config(self):
        return SupervisorConfig(backend="supervisord", conf_dir="/etc/supervisor/conf.d")

    async def test_describe_running(self, target, config):
        client, _ = make_client(["web        RUNNING   pid 1234, uptime 0:01:00\n"], config)
        desc = await client.describe(target, "web")
        assert desc.observed_state == "running"
        assert desc.pid == 1234

    async def test_describe_unknown(self, target, config):
        client, _ = make_client(["web: ERROR (no such process)\n"], config)
        desc = await client.describe(target, "web")
        assert desc.observed_state == "absent"

    async def test_start_new_program(self, target, config):
        client, executor = make_client(
            ["web: ERROR (no such process)\n", "web   RUNNING   pid 99, uptime 0:00:01\n"], config
        )
        outcome = await client.apply(
            target, "web", SupervisorDirective.START, "app.py", interpreter="python3"
        )
        assert outcome.action == "started"
        assert executor.commands[0].startswith("printf '[program:%s]")
        assert "/etc/supervisor/conf.d/web.conf" in executor.commands[0]
        assert "'python3 app.py'" in executor.commands[0]
        assert executor.commands[1:] == ["supervisorctl reread", "supervisorctl update web"]
        assert outcome.descriptor.pid == 99

    async def test_start_known_program(self, target, config):
        client, executor = make_client(
            ["web   STOPPED   Jan 01 12:00 AM\n", "web   RUNNING   pid 7, uptime 0:00:01\n"], config
        )
        outcome = await client.apply(target, "web", SupervisorDirective.START, "app.py")
        assert executor.commands == ["supervisorctl start web"]
        assert outcome.descriptor.running

    async def test_describe_tolerates_nonzero_status(self, config):
        assert SupervisordBackend(config).describe_command("web") == "supervisorctl status web || true"


# ── Helpers ──────────────────────────────────────────────────────────────────


class TestStateMapping:
    @pytest.mark.parametrize(
        ("native", "expected"),
        [
            ("online", "running"),
            ("launching", "running"),
            ("stopped", "stopped"),
            ("errored", "errored"),
            ("RUNNING", "running"),
            ("BACKOFF", "running"),
            ("EXITED", "stopped"),
            ("FATAL", "errored"),
            ("weird", "unknown"),
        ],
    )
    def test_observed_state(self, native, expected):
        assert observed_state(native) == expected

    def test_make_backend(self):
        assert isinstance(make_backend(SupervisorConfig()), Pm2Backend)
        assert isinstance(make_backend(SupervisorConfig(backend="supervisord")), SupervisordBackend)

    async def test_descriptor_to_dict(self, target):
        client, _ = make_client([pm2_list(("web", "online"))], SupervisorConfig(max_restarts=4))
        data = (await client.describe(target, "web")).to_dict()
        assert data["observed_state"] == "running"
        assert data["restart_policy"] == {"autorestart": True, "max_restarts": 4}
        assert data["last_restart_at"].startswith("2026-01-01")
