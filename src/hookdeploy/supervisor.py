"""Process supervisor client — drives pm2 or supervisord on a target.

Directives are idempotent against current supervisor state: ``start`` of a
running process and ``stop`` of an absent or stopped one are successful
no-ops.  Every supervisor call goes through the ``RemoteExecutor``, so the
same transport, retry and timeout rules apply.

Key exports:
    ProcessSupervisorClient — apply(), describe()
    ManagedProcessDescriptor, DirectiveOutcome
    Pm2Backend, SupervisordBackend
"""

from __future__ import annotations

import asyncio
import json
import logging
import shlex
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from hookdeploy.errors import RemoteCommandError, StageTimeoutError
from hookdeploy.pipeline.models import SupervisorDirective

if TYPE_CHECKING:
    from hookdeploy.config import SupervisorConfig, TargetHost
    from hookdeploy.remote import CommandResult, RemoteExecutor

logger = logging.getLogger(__name__)

ABSENT = "absent"

# Native supervisor states → observed state
_STATE_MAP = {
    # pm2
    "online": "running",
    "launching": "running",
    "stopping": "stopped",
    "stopped": "stopped",
    "errored": "errored",
    # supervisord
    "RUNNING": "running",
    "STARTING": "running",
    "BACKOFF": "running",
    "STOPPING": "stopped",
    "STOPPED": "stopped",
    "EXITED": "stopped",
    "FATAL": "errored",
}


def observed_state(native: str) -> str:
    """Normalize a pm2 or supervisord state name."""
    return _STATE_MAP.get(native, "unknown")


@dataclass
class ManagedProcessDescriptor:
    """What the supervisor reports about one named process."""

    name: str
    target: str
    observed_state: str = ABSENT  # running | stopped | errored | absent | unknown
    desired_state: str | None = None  # running | stopped, set by apply()
    native_state: str | None = None
    pid: int | None = None
    restart_count: int = 0
    last_restart_at: datetime | None = None
    autorestart: bool = True
    max_restarts: int = 0

    @property
    def exists(self) -> bool:
        return self.observed_state != ABSENT

    @property
    def running(self) -> bool:
        return self.observed_state == "running"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "target": self.target,
            "observed_state": self.observed_state,
            "desired_state": self.desired_state,
            "native_state": self.native_state,
            "pid": self.pid,
            "restart_count": self.restart_count,
            "last_restart_at": self.last_restart_at.isoformat() if self.last_restart_at else None,
            "restart_policy": {
                "autorestart": self.autorestart,
                "max_restarts": self.max_restarts,
            },
        }


@dataclass
class DirectiveOutcome:
    """Result of applying one directive on one target."""

    target: str
    process: str
    directive: SupervisorDirective
    action: str  # started | stopped | restarted | noop
    descriptor: ManagedProcessDescriptor
    output: str = ""
    commands: list[str] = field(default_factory=list)


# ── Backends ─────────────────────────────────────────────────────────────────


class SupervisorBackend:
    """Builds supervisor command lines and parses their output."""

    name = ""

    def __init__(self, config: SupervisorConfig):
        self.config = config

    def describe_command(self, process: str) -> str:
        raise NotImplementedError

    def parse_describe(self, process: str, target: str, result: CommandResult) -> ManagedProcessDescriptor:
        raise NotImplementedError

    def start_commands(
        self,
        process: str,
        command: str,
        args: Sequence[str],
        interpreter: str | None,
        *,
        existing: bool,
    ) -> list[str]:
        raise NotImplementedError

    def stop_commands(self, process: str) -> list[str]:
        raise NotImplementedError

    def restart_commands(self, process: str) -> list[str]:
        raise NotImplementedError

    def persist_commands(self) -> list[str]:
        return []

    def _descriptor(self, process: str, target: str, **fields: Any) -> ManagedProcessDescriptor:
        return ManagedProcessDescriptor(
            name=process,
            target=target,
            autorestart=self.config.autorestart,
            max_restarts=self.config.max_restarts,
            **fields,
        )


class Pm2Backend(SupervisorBackend):
    """pm2: ``pm2 jlist`` for state, ``pm2 start|stop|restart`` for control."""

    name = "pm2"

    @property
    def _bin(self) -> str:
        return self.config.binary or "pm2"

    def describe_command(self, process: str) -> str:
        return f"{self._bin} jlist"

    def parse_describe(self, process: str, target: str, result: CommandResult) -> ManagedProcessDescriptor:
        if not result.ok:
            raise RemoteCommandError(
                "pm2 jlist failed",
                output=result.output,
                target=target,
                exit_code=result.exit_code,
            )
        text = result.stdout
        start = _pm2_json_start(text)
        try:
            entries = json.loads(text[start:]) if start >= 0 else []
        except json.JSONDecodeError as exc:
            raise RemoteCommandError(
                f"Unparseable pm2 jlist output: {exc}", output=result.output, target=target
            ) from exc

        for entry in entries:
            if entry.get("name") != process:
                continue
            env = entry.get("pm2_env") or {}
            native = env.get("status", "unknown")
            uptime_ms = env.get("pm_uptime")
            return self._descriptor(
                process,
                target,
                observed_state=observed_state(native),
                native_state=native,
                pid=entry.get("pid") or None,
                restart_count=int(env.get("restart_time", 0) or 0),
                last_restart_at=(
                    datetime.fromtimestamp(uptime_ms / 1000, tz=timezone.utc)
                    if isinstance(uptime_ms, (int, float)) and uptime_ms > 0
                    else None
                ),
            )
        return self._descriptor(process, target)

    def start_commands(self, process, command, args, interpreter, *, existing):
        argv = [self._bin, "start", command, "--name", process]
        if interpreter:
            argv += ["--interpreter", interpreter]
        if self.config.autorestart:
            argv += ["--max-restarts", str(self.config.max_restarts)]
        else:
            argv.append("--no-autorestart")
        if args:
            argv += ["--", *args]
        cmds = []
        if existing:
            # Drop the stale entry so the new command line takes effect
            cmds.append(f"{self._bin} delete {shlex.quote(process)}")
        cmds.append(shlex.join(argv))
        return cmds

    def stop_commands(self, process: str) -> list[str]:
        return [f"{self._bin} stop {shlex.quote(process)}"]

    def restart_commands(self, process: str) -> list[str]:
        return [f"{self._bin} restart {shlex.quote(process)} --update-env"]

    def persist_commands(self) -> list[str]:
        return [f"{self._bin} save"] if self.config.persist else []


class SupervisordBackend(SupervisorBackend):
    """supervisord: ``supervisorctl status|start|stop|restart``.

    A process that supervisord does not know yet gets a program file written
    to ``supervisor.conf_dir`` and is added with ``supervisorctl update``.
    """

    name = "supervisord"

    @property
    def _bin(self) -> str:
        return self.config.binary or "supervisorctl"

    def describe_command(self, process: str) -> str:
        # supervisorctl exits non-zero for anything not RUNNING
        return f"{self._bin} status {shlex.quote(process)} || true"

    def parse_describe(self, process: str, target: str, result: CommandResult) -> ManagedProcessDescriptor:
        for line in result.stdout.splitlines():
            parts = line.split()
            if not parts or parts[0].rstrip(":") != process:
                continue
            if "no such process" in line.lower():
                break
            native = parts[1] if len(parts) > 1 else "unknown"
            pid = None
            if "pid" in parts and parts.index("pid") + 1 < len(parts):
                raw = parts[parts.index("pid") + 1].rstrip(",")
                pid = int(raw) if raw.isdigit() else None
            return self._descriptor(
                process,
                target,
                observed_state=observed_state(native),
                native_state=native,
                pid=pid,
            )
        return self._descriptor(process, target)

    def start_commands(self, process, command, args, interpreter, *, existing):
        if existing:
            return [f"{self._bin} start {shlex.quote(process)}"]
        argv = [interpreter] if interpreter else []
        argv += [command, *args]
        conf = f"{self.config.conf_dir.rstrip('/')}/{process}.conf"
        program = (
            "printf '[program:%s]\\ncommand=%s\\ndirectory=%s\\nautostart=true\\n"
            "autorestart=%s\\nstartretries=%s\\n' "
            f"{shlex.quote(process)} {shlex.quote(shlex.join(argv))} \"$PWD\" "
            f"{'true' if self.config.autorestart else 'false'} {self.config.max_restarts} "
            f"> {shlex.quote(conf)}"
        )
        return [program, f"{self._bin} reread", f"{self._bin} update {shlex.quote(process)}"]

    def stop_commands(self, process: str) -> list[str]:
        return [f"{self._bin} stop {shlex.quote(process)}"]

    def restart_commands(self, process: str) -> list[str]:
        return [f"{self._bin} restart {shlex.quote(process)}"]


_BACKENDS: dict[str, type[SupervisorBackend]] = {
    Pm2Backend.name: Pm2Backend,
    SupervisordBackend.name: SupervisordBackend,
}


def _pm2_json_start(text: str) -> int:
    """Offset of the JSON list in ``pm2 jlist`` output, or -1.

    pm2 may print update notices and ``[PM2] ...`` daemon banners first.
    """
    offset = 0
    fallback = -1
    for line in text.splitlines(keepends=True):
        stripped = line.strip()
        if stripped.startswith("[{") or stripped == "[]":
            return offset + line.index("[")
        if stripped.startswith("[") and not stripped.startswith("[PM2"):
            fallback = offset + line.index("[")
        offset += len(line)
    return fallback


def make_backend(config: SupervisorConfig) -> SupervisorBackend:
    return _BACKENDS[config.backend](config)


# ── Client ───────────────────────────────────────────────────────────────────


class ProcessSupervisorClient:
    """Applies supervisor directives on targets through a ``RemoteExecutor``."""

    def __init__(self, executor: RemoteExecutor, config: SupervisorConfig):
        self._executor = executor
        self.backend = make_backend(config)

    async def describe(
        self, target: TargetHost, process: str, *, timeout: float = 60.0
    ) -> ManagedProcessDescriptor:
        """Query the supervisor for ``process`` on ``target``."""
        result = await self._executor.run_command(
            target, self.backend.describe_command(process), timeout=timeout
        )
        return self.backend.parse_describe(process, target.name, result)

    async def apply(
        self,
        target: TargetHost,
        process: str,
        directive: SupervisorDirective,
        command: str | None = None,
        args: Sequence[str] = (),
        *,
        interpreter: str | None = None,
        env: dict[str, str] | None = None,
        timeout: float = 60.0,
    ) -> DirectiveOutcome:
        """Bring ``process`` on ``target`` into the state ``directive`` asks for.

        Raises:
            RemoteCommandError: A supervisor command exited non-zero.
            StageTimeoutError: The whole directive exceeded ``timeout``.
            AuthenticationError, TransportError: From the executor.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        def remaining() -> float:
            left = deadline - loop.time()
            if left <= 0:
                raise StageTimeoutError(
                    f"Directive '{directive.value}' for '{process}' timed out after {timeout:g}s",
                    target=target.name,
                )
            return left

        current = await self.describe(target, process, timeout=remaining())

        match directive:
            case SupervisorDirective.START:
                if current.running:
                    action, commands = "noop", []
                else:
                    action = "started"
                    commands = self._start(process, command, args, interpreter, current)
            case SupervisorDirective.STOP | SupervisorDirective.STOP_IF_RUNNING:
                if current.running:
                    action, commands = "stopped", self.backend.stop_commands(process)
                else:
                    action, commands = "noop", []
            case SupervisorDirective.RESTART:
                if current.exists:
                    action, commands = "restarted", self.backend.restart_commands(process)
                else:
                    action = "started"
                    commands = self._start(process, command, args, interpreter, current)

        if commands:
            commands = commands + self.backend.persist_commands()

        outputs: list[str] = []
        for cmd in commands:
            result = await self._executor.run_command(target, cmd, timeout=remaining(), env=env)
            if result.output:
                outputs.append(result.output)
            if not result.ok:
                raise RemoteCommandError(
                    f"Supervisor command failed: {cmd}",
                    output="\n".join(outputs),
                    target=target.name,
                    exit_code=result.exit_code,
                )

        descriptor = current
        if commands:
            descriptor = await self.describe(target, process, timeout=remaining())
        descriptor.desired_state = (
            "stopped"
            if directive in (SupervisorDirective.STOP, SupervisorDirective.STOP_IF_RUNNING)
            else "running"
        )

        logger.info(
            "Supervisor %s on %s: %s %s → %s (state=%s)",
            self.backend.name,
            target.name,
            directive.value,
            process,
            action,
            descriptor.observed_state,
        )
        return DirectiveOutcome(
            target=target.name,
            process=process,
            directive=directive,
            action=action,
            descriptor=descriptor,
            output="\n".join(outputs),
            commands=list(commands),
        )

    def _start(
        self,
        process: str,
        command: str | None,
        args: Sequence[str],
        interpreter: str | None,
        current: ManagedProcessDescriptor,
    ) -> list[str]:
        if not command:
            raise RemoteCommandError(
                f"Process '{process}' is not running and no command was given to start it",
                target=current.target,
            )
        return self.backend.start_commands(
            process, command, args, interpreter, existing=current.exists
        )