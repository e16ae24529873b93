"""Stage handlers — one coroutine per stage kind, looked up by the engine.

Each handler receives a ``StageContext`` and returns a ``StageOutcome``.
Handlers raise ``DeployError`` subclasses for stage-wide failures; per-target
failures during fan-out are caught and recorded on the target's result so
every host gets its own entry.

Usage::

    handlers = StageHandlerRegistry()

    @handlers.register(StageKind.REMOTE_COMMAND)
    async def my_command(ctx: StageContext) -> StageOutcome:
        ...

Built-in handlers for all four kinds are registered at construction time.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from hookdeploy.errors import (
    ArtifactError,
    DeployError,
    ErrorKind,
    RemoteCommandError,
    ValidationError,
)
from hookdeploy.pipeline.models import (
    PipelineDefinition,
    Run,
    StageKind,
    StageResultStatus,
    StageSpec,
    TargetResult,
)
from hookdeploy.remote import resolve_sources

if TYPE_CHECKING:
    from hookdeploy.config import TargetHost
    from hookdeploy.remote import RemoteExecutor
    from hookdeploy.supervisor import ProcessSupervisorClient

logger = logging.getLogger("hookdeploy.pipeline.stages")

DEFAULT_CLONE_REF = "main"

# Slack past the stage timeout before a target that never returned is abandoned
TARGET_GRACE = 2.0


@dataclass
class StageContext:
    """Everything a handler needs to execute one stage of one run."""

    run: Run
    definition: PipelineDefinition
    stage: StageSpec
    targets: list[TargetHost]
    timeout: float
    workspace: Path  # <staging_dir>/<pipeline>/<run number>
    executor: RemoteExecutor
    supervisor: ProcessSupervisorClient
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class StageOutcome:
    """What a handler reports back to the engine."""

    succeeded: bool
    exit_code: int | None = None
    output: str = ""
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    targets: list[TargetResult] = field(default_factory=list)

    @classmethod
    def from_error(cls, exc: DeployError, targets: list[TargetResult] | None = None) -> StageOutcome:
        return cls(
            succeeded=False,
            exit_code=exc.exit_code,
            output=exc.output,
            error_kind=exc.kind,
            error_message=str(exc),
            targets=targets or [],
        )


StageHandler = Callable[[StageContext], Awaitable[StageOutcome]]


class StageHandlerRegistry:
    """Registry mapping stage kinds to handler coroutines."""

    def __init__(self) -> None:
        self._handlers: dict[StageKind, StageHandler] = {}
        self._register_builtin_handlers()

    def register(self, kind: StageKind) -> Callable[[StageHandler], StageHandler]:
        """Decorator to register a handler for a stage kind."""

        def decorator(fn: StageHandler) -> StageHandler:
            self.register_fn(kind, fn)
            return fn

        return decorator

    def register_fn(self, kind: StageKind, fn: StageHandler) -> None:
        """Directly register (or replace) the handler for a stage kind."""
        self._handlers[kind] = fn
        logger.debug("Registered stage handler: %s", kind.value)

    def get(self, kind: StageKind) -> StageHandler | None:
        return self._handlers.get(kind)

    @property
    def kinds(self) -> list[StageKind]:
        return list(self._handlers)

    def _register_builtin_handlers(self) -> None:
        self.register_fn(StageKind.CLONE, clone_stage)
        self.register_fn(StageKind.TRANSFER, transfer_stage)
        self.register_fn(StageKind.REMOTE_COMMAND, remote_command_stage)
        self.register_fn(StageKind.SUPERVISOR_DIRECTIVE, supervisor_stage)


# ── Fan-out ──────────────────────────────────────────────────────────────────


TargetOperation = Callable[["TargetHost"], Awaitable[TargetResult]]


async def fan_out(ctx: StageContext, op: TargetOperation) -> StageOutcome:
    """Run ``op`` against every target concurrently and aggregate.

    The stage succeeds only if every target succeeded.
    """
    results = list(await asyncio.gather(*(_guarded(ctx, target, op) for target in ctx.targets)))
    failed = [r for r in results if r.status == StageResultStatus.FAILED]

    if len(results) == 1:
        output = results[0].output
    else:
        output = "\n".join(f"[{r.target}]\n{r.output.rstrip()}" for r in results if r.output)

    if not failed:
        return StageOutcome(succeeded=True, exit_code=0, output=output, targets=results)

    first = failed[0]
    if len(results) == 1:
        message = first.error_message
    else:
        detail = "; ".join(f"{r.target}: {r.error_message}" for r in failed)
        message = f"{len(failed)} of {len(results)} targets failed: {detail}"
    return StageOutcome(
        succeeded=False,
        exit_code=first.exit_code,
        output=output,
        error_kind=first.error_kind,
        error_message=message,
        targets=results,
    )


async def _guarded(ctx: StageContext, target: TargetHost, op: TargetOperation) -> TargetResult:
    try:
        return await asyncio.wait_for(op(target), timeout=ctx.timeout + TARGET_GRACE)
    except asyncio.TimeoutError:
        logger.warning(
            "Stage '%s' abandoned on %s after %gs (run %s)",
            ctx.stage.name,
            target.name,
            ctx.timeout,
            ctx.run.run_id,
        )
        return TargetResult(
            target=target.name,
            status=StageResultStatus.FAILED,
            error_kind=ErrorKind.TIMEOUT,
            error_message=f"Did not finish within {ctx.timeout:g}s",
        )
    except DeployError as exc:
        logger.warning(
            "Stage '%s' failed on %s (run %s): %s",
            ctx.stage.name,
            target.name,
            ctx.run.run_id,
            exc.message,
        )
        return TargetResult(
            target=target.name,
            status=StageResultStatus.FAILED,
            exit_code=exc.exit_code,
            output=exc.output,
            error_kind=exc.kind,
            error_message=exc.message,
        )
    except Exception as exc:
        logger.exception(
            "Unexpected error in stage '%s' on %s (run %s)",
            ctx.stage.name,
            target.name,
            ctx.run.run_id,
        )
        return TargetResult(
            target=target.name,
            status=StageResultStatus.FAILED,
            error_kind=ErrorKind.INTERNAL,
            error_message=f"{type(exc).__name__}: {exc}",
        )


# ── Built-in handlers ────────────────────────────────────────────────────────


async def clone_stage(ctx: StageContext) -> StageOutcome:
    """Clone the pipeline repository into the run's staging workspace."""
    repo = ctx.definition.repository
    if not repo:
        raise ArtifactError(f"Pipeline '{ctx.definition.name}' has no repository to clone")

    ref = ctx.stage.ref or ctx.run.trigger.branch or DEFAULT_CLONE_REF
    workspace = ctx.workspace
    if workspace.exists():
        await asyncio.to_thread(shutil.rmtree, workspace)
    workspace.parent.mkdir(parents=True, exist_ok=True)

    loop = asyncio.get_running_loop()
    deadline = loop.time() + ctx.timeout

    argv = ["git", "clone", "--branch", ref, "--single-branch"]
    if ctx.stage.depth:
        argv += ["--depth", str(ctx.stage.depth)]
    argv += [repo, str(workspace)]

    outputs: list[str] = []
    try:
        result = await ctx.executor.run_local(*argv, timeout=ctx.timeout)
        outputs.append(result.output)
        if not result.ok:
            raise ArtifactError(
                f"git clone of '{ref}' failed (exit {result.exit_code})",
                output="".join(outputs),
                exit_code=result.exit_code,
            )

        commit = ctx.run.trigger.commit
        if commit:
            result = await ctx.executor.run_local(
                "git", "checkout", "--detach", commit,
                cwd=workspace,
                timeout=max(deadline - loop.time(), 0.1),
            )
            outputs.append(result.output)
            if not result.ok:
                raise ArtifactError(
                    f"git checkout of {commit} failed (exit {result.exit_code})",
                    output="".join(outputs),
                    exit_code=result.exit_code,
                )

        head = await ctx.executor.run_local(
            "git", "rev-parse", "HEAD",
            cwd=workspace,
            timeout=max(deadline - loop.time(), 0.1),
        )
    except FileNotFoundError as exc:
        raise ArtifactError(f"git is not available: {exc}") from exc

    sha = head.stdout.strip() if head.ok else None
    logger.info("Cloned %s@%s (%s) into %s", repo, ref, sha, workspace)
    output = "".join(outputs)
    return StageOutcome(
        succeeded=True,
        exit_code=0,
        output=output,
        targets=[
            TargetResult(
                target="local",
                status=StageResultStatus.SUCCEEDED,
                exit_code=0,
                output=output,
                details={"ref": ref, "commit": sha, "path": str(workspace)},
            )
        ],
    )


async def transfer_stage(ctx: StageContext) -> StageOutcome:
    """Copy files from the staging workspace to every target."""
    if not ctx.workspace.is_dir():
        raise ArtifactError(f"Staging area {ctx.workspace} does not exist; nothing was cloned")
    # Fail before touching any target if the file set is incomplete
    resolve_sources(ctx.stage.files, ctx.workspace)

    async def copy(target: TargetHost) -> TargetResult:
        outcome = await ctx.executor.copy_files(
            target,
            ctx.stage.files,
            ctx.stage.destination or ".",
            source_dir=ctx.workspace,
            timeout=ctx.timeout,
        )
        return TargetResult(
            target=target.name,
            status=StageResultStatus.SUCCEEDED,
            exit_code=0,
            output=outcome.output,
            details={"destination": outcome.destination, "files": outcome.files},
        )

    return await fan_out(ctx, copy)


async def remote_command_stage(ctx: StageContext) -> StageOutcome:
    """Run the stage command on every target in its working directory."""
    command = ctx.stage.command or ""

    async def run(target: TargetHost) -> TargetResult:
        result = await ctx.executor.run_command(
            target, command, timeout=ctx.timeout, env=ctx.env
        )
        if not result.ok:
            raise RemoteCommandError(
                f"Command exited with status {result.exit_code}",
                output=result.output,
                target=target.name,
                exit_code=result.exit_code,
            )
        return TargetResult(
            target=target.name,
            status=StageResultStatus.SUCCEEDED,
            exit_code=result.exit_code,
            output=result.output,
        )

    return await fan_out(ctx, run)


async def supervisor_stage(ctx: StageContext) -> StageOutcome:
    """Apply a supervisor directive for the stage's process on every target."""
    stage = ctx.stage
    if not stage.process or stage.directive is None:
        raise ValidationError(
            f"Stage '{stage.name}' needs both 'process' and 'directive'"
        )

    async def apply(target: TargetHost) -> TargetResult:
        outcome = await ctx.supervisor.apply(
            target,
            stage.process,
            stage.directive,
            stage.command,
            stage.args,
            interpreter=stage.interpreter,
            env=ctx.env,
            timeout=ctx.timeout,
        )
        return TargetResult(
            target=target.name,
            status=StageResultStatus.SUCCEEDED,
            exit_code=0,
            output=outcome.output,
            details={"action": outcome.action, "process": outcome.descriptor.to_dict()},
        )

    return await fan_out(ctx, apply)
