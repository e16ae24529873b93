"""Remote executor — runs commands and copies files on target hosts.

Two transports:
    ssh   — OpenSSH client binaries (``ssh``/``scp``) in batch mode, one
            session per invocation, identity from the credential store.
    local — ``/bin/sh`` on the pipeline host itself.

A remote command's non-zero exit is *returned* in ``CommandResult``; only
failures to reach or authenticate against the target raise.  Transport
failures are retried with exponential backoff inside the caller's time
budget; authentication failures are never retried.

Key exports:
    RemoteExecutor — run_command(), copy_files(), run_local()
    CommandResult, CopyOutcome
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import shutil
import signal
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

from hookdeploy.errors import (
    ArtifactError,
    AuthenticationError,
    DeployError,
    RemoteCommandError,
    StageTimeoutError,
    TransportError,
)

if TYPE_CHECKING:
    from hookdeploy.config import TargetHost
    from hookdeploy.credentials import CredentialStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

# How long to keep reading pipes after the process has exited or been killed
_DRAIN_GRACE = 2.0

# ssh reserves exit status 255 for its own errors
SSH_ERROR_EXIT = 255

_AUTH_MARKERS = (
    "Permission denied",
    "Host key verification failed",
    "no such identity",
    "Too many authentication failures",
)
_TRANSPORT_MARKERS = (
    "Connection refused",
    "Connection timed out",
    "Connection reset",
    "Connection closed",
    "Could not resolve hostname",
    "No route to host",
    "Network is unreachable",
    "lost connection",
    "Operation timed out",
)


@dataclass
class CommandResult:
    """Exit status and captured output of one command."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """Combined output, stdout first."""
        if self.stdout and self.stderr:
            sep = "" if self.stdout.endswith("\n") else "\n"
            return f"{self.stdout}{sep}{self.stderr}"
        return self.stdout or self.stderr


@dataclass
class CopyOutcome:
    """Result of a successful copy to one target."""

    target: str
    destination: str
    files: list[str] = field(default_factory=list)
    output: str = ""


class RemoteExecutor:
    """Runs commands and copies files on ``TargetHost``s."""

    def __init__(
        self,
        credentials: CredentialStore,
        *,
        connect_timeout: int = 10,
        transport_retries: int = 2,
        retry_backoff: float = 2.0,
        ssh_binary: str = "ssh",
        scp_binary: str = "scp",
    ):
        self._credentials = credentials
        self._connect_timeout = connect_timeout
        self._transport_retries = transport_retries
        self._retry_backoff = retry_backoff
        self._ssh = ssh_binary
        self._scp_binary = scp_binary

    # ── Public API ───────────────────────────────────────────────────────────

    async def run_command(
        self,
        target: TargetHost,
        command: str,
        *,
        timeout: float,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        """Run a shell command line in the target's working directory.

        Raises:
            AuthenticationError: Credential problem (not retried).
            TransportError: Target unreachable after all retries.
            StageTimeoutError: ``timeout`` seconds elapsed (partial output attached).
        """
        script = build_script(command, workdir=target.workdir, env=env)
        logger.debug("Running on %s: %s", target.name, command)

        if target.transport == "local":
            return await _run_process(
                "/bin/sh", "-c", script, timeout=timeout, target=target.name
            )

        return await self._with_retries(
            target,
            timeout,
            lambda remaining: self._ssh_exec(target, script, remaining),
        )

    async def copy_files(
        self,
        target: TargetHost,
        files: Sequence[str],
        destination: str,
        *,
        source_dir: Path,
        timeout: float,
    ) -> CopyOutcome:
        """Copy ``files`` (relative to ``source_dir``) into ``destination``.

        The destination is created if absent.  Files land by basename.  A
        partial failure leaves the destination as far as the copy got.

        Raises:
            ArtifactError: A listed file is missing from ``source_dir``.
            AuthenticationError, TransportError, StageTimeoutError: as run_command.
            RemoteCommandError: The destination could not be created or written.
        """
        sources = resolve_sources(files, source_dir)
        dest = _join_workdir(target.workdir, destination)

        if target.transport == "local":
            try:
                await asyncio.wait_for(
                    asyncio.to_thread(_copy_local, sources, Path(dest).expanduser()),
                    timeout=timeout,
                )
            except asyncio.TimeoutError as exc:
                raise StageTimeoutError(
                    f"Copy to {dest} timed out after {timeout:g}s", target=target.name
                ) from exc
            except OSError as exc:
                raise RemoteCommandError(
                    f"Copy to {dest} failed: {exc}", target=target.name
                ) from exc
            return CopyOutcome(
                target=target.name, destination=dest, files=[p.name for p in sources]
            )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        mkdir = await self.run_command(target, f"mkdir -p {quote_path(dest)}", timeout=timeout)
        if not mkdir.ok:
            raise RemoteCommandError(
                f"Could not create {dest}",
                output=mkdir.output,
                target=target.name,
                exit_code=mkdir.exit_code,
            )

        remaining = max(deadline - loop.time(), 0.0)
        result = await self._with_retries(
            target,
            remaining,
            lambda budget: self._scp(target, sources, dest, budget),
        )
        return CopyOutcome(
            target=target.name,
            destination=dest,
            files=[p.name for p in sources],
            output=result.output,
        )

    async def run_local(
        self,
        *argv: str,
        cwd: Path | None = None,
        timeout: float,
    ) -> CommandResult:
        """Run a program on the pipeline host (no shell). Used for git."""
        return await _run_process(*argv, cwd=cwd, timeout=timeout, target="local")

    # ── SSH ──────────────────────────────────────────────────────────────────

    def _destination(self, target: TargetHost) -> tuple[list[str], str]:
        """Return (common ssh options, user@host) for a target."""
        if not target.credential:
            raise AuthenticationError(
                f"Target '{target.name}' has no credential configured", target=target.name
            )
        try:
            identity = self._credentials.resolve(target.credential)
        except AuthenticationError as exc:
            exc.target = target.name
            raise
        user = target.user or identity.user
        host = f"{user}@{target.host}" if user else target.host
        return identity.ssh_options(self._connect_timeout), host

    async def _ssh_exec(self, target: TargetHost, script: str, timeout: float) -> CommandResult:
        opts, host = self._destination(target)
        argv = [self._ssh, *opts, "-p", str(target.port), host, script]
        result = await _run_transport_process(argv, timeout=timeout, target=target.name)
        if result.exit_code == SSH_ERROR_EXIT:
            # a remote command may exit 255 itself; ssh always explains its own failures
            error = _classify_failure(result, target.name, default=None)
            if error is not None:
                raise error
        return result

    async def _scp(
        self, target: TargetHost, sources: list[Path], dest: str, timeout: float
    ) -> CommandResult:
        opts, host = self._destination(target)
        argv = [
            self._scp_binary, *opts, "-r", "-p", "-P", str(target.port),
            *[str(p) for p in sources],
            f"{host}:{dest}/",
        ]
        result = await _run_transport_process(argv, timeout=timeout, target=target.name)
        if not result.ok:
            raise _classify_failure(result, target.name, default=RemoteCommandError)
        return result

    async def _with_retries(
        self,
        target: TargetHost,
        timeout: float,
        op: Callable[[float], Awaitable[T]],
    ) -> T:
        """Run ``op(remaining_budget)``, retrying TransportError with backoff.

        All attempts and backoff sleeps share one ``timeout`` budget.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        attempt = 0
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise StageTimeoutError(
                    f"Timed out after {timeout:g}s waiting for {target.name}",
                    target=target.name,
                )
            try:
                return await op(remaining)
            except TransportError as exc:
                if attempt >= self._transport_retries:
                    raise
                delay = self._retry_backoff * (2**attempt)
                attempt += 1
                if deadline - loop.time() <= delay:
                    raise
                logger.warning(
                    "Transport error on %s (attempt %d/%d): %s — retrying in %.1fs",
                    target.name,
                    attempt,
                    self._transport_retries + 1,
                    exc.message,
                    delay,
                )
                await asyncio.sleep(delay)


# ── Process helpers ──────────────────────────────────────────────────────────


async def _run_transport_process(
    argv: list[str], *, timeout: float, target: str
) -> CommandResult:
    try:
        return await _run_process(*argv, timeout=timeout, target=target)
    except FileNotFoundError as exc:
        raise TransportError(f"{argv[0]} is not installed: {exc}", target=target) from exc


async def _run_process(
    *argv: str,
    timeout: float,
    target: str,
    cwd: Path | None = None,
) -> CommandResult:
    """Run a process in its own session, killing the whole group on timeout.

    Output is drained incrementally so a timeout still reports whatever the
    process printed before it was killed.
    """
    proc = await asyncio.create_subprocess_exec(
        *argv,
        cwd=str(cwd) if cwd else None,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
    )
    stdout_chunks: list[bytes] = []
    stderr_chunks: list[bytes] = []
    reader = asyncio.ensure_future(
        asyncio.gather(
            _drain(proc.stdout, stdout_chunks),
            _drain(proc.stderr, stderr_chunks),
        )
    )

    def collected() -> tuple[str, str]:
        return (
            b"".join(stdout_chunks).decode(errors="replace"),
            b"".join(stderr_chunks).decode(errors="replace"),
        )

    try:
        await asyncio.wait_for(proc.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        _kill_group(proc)
        await proc.wait()
        await _finish_reader(reader)
        stdout, stderr = collected()
        raise StageTimeoutError(
            f"Command timed out after {timeout:g}s",
            output=CommandResult(-1, stdout, stderr).output,
            target=target,
        ) from None
    except asyncio.CancelledError:
        _kill_group(proc)
        await proc.wait()
        reader.cancel()
        raise

    await _finish_reader(reader)
    stdout, stderr = collected()
    return CommandResult(proc.returncode or 0, stdout, stderr)


async def _drain(stream: asyncio.StreamReader | None, sink: list[bytes]) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            return
        sink.append(chunk)


async def _finish_reader(reader: asyncio.Future) -> None:
    """Give the pipe readers a moment to hit EOF; background grandchildren may hold them open."""
    try:
        await asyncio.wait_for(asyncio.shield(reader), timeout=_DRAIN_GRACE)
    except asyncio.TimeoutError:
        reader.cancel()


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        if proc.returncode is None:
            proc.kill()


# ── Script / path helpers ────────────────────────────────────────────────────


def quote_path(path: str) -> str:
    """Shell-quote a path but keep a leading ``~`` expandable."""
    if path == "~":
        return "~"
    if path.startswith("~/"):
        return "~/" + shlex.quote(path[2:])
    return shlex.quote(path)


def build_script(command: str, *, workdir: str | None, env: dict[str, str] | None) -> str:
    """Wrap a command so it runs in ``workdir`` with ``env`` exported."""
    parts: list[str] = []
    if workdir:
        parts.append(f"cd {quote_path(workdir)}")
    if env:
        assignments = " ".join(f"{k}={shlex.quote(v)}" for k, v in sorted(env.items()))
        parts.append(f"export {assignments}")
    parts.append(command)
    return " && ".join(parts)


def _join_workdir(workdir: str, destination: str) -> str:
    if destination.startswith(("/", "~")):
        return destination.rstrip("/") or "/"
    base = workdir.rstrip("/") or "/"
    return f"{base}/{destination}".rstrip("/")


def resolve_sources(files: Sequence[str], source_dir: Path) -> list[Path]:
    root = source_dir.resolve()
    sources: list[Path] = []
    missing: list[str] = []
    for rel in files:
        path = (root / rel).resolve()
        if root not in path.parents and path != root:
            raise ArtifactError(f"File '{rel}' escapes the staging directory")
        if not path.exists():
            missing.append(rel)
        sources.append(path)
    if missing:
        raise ArtifactError(f"Missing from staging area {root}: {', '.join(missing)}")
    return sources


def _copy_local(sources: list[Path], dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    for src in sources:
        if src.is_dir():
            shutil.copytree(src, dest / src.name, dirs_exist_ok=True)
        else:
            shutil.copy2(src, dest / src.name)


def _classify_failure(
    result: CommandResult,
    target: str,
    *,
    default: type[DeployError] | None,
) -> DeployError | None:
    text = result.stderr or result.stdout
    message = text.strip().splitlines()[-1] if text.strip() else f"exit code {result.exit_code}"
    if any(marker in text for marker in _AUTH_MARKERS):
        cls: type[DeployError] = AuthenticationError
    elif any(marker in text for marker in _TRANSPORT_MARKERS):
        cls = TransportError
    else:
        if default is None:
            return None
        cls = default
    return cls(message, output=result.output, target=target, exit_code=result.exit_code)
