"""Stage engine — executes one run's stages in order against its targets.

Fail-fast: the first failing stage ends the run as ``failed`` and every
later stage is recorded as ``skipped``.  There is no automatic rollback.
Cancellation requested while a run executes is honored at the next stage
boundary; the stage in flight completes first.

Key exports:
    StageEngine — execute(run), request_cancel(run_id)
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from hookdeploy.errors import DeployError, ErrorKind, ValidationError
from hookdeploy.pipeline.models import (
    PipelineDefinition,
    Run,
    RunStatus,
    StageResult,
    StageResultStatus,
    StageSpec,
)
from hookdeploy.pipeline.registry import RunRegistry
from hookdeploy.pipeline.stages import StageContext, StageHandlerRegistry, StageOutcome

if TYPE_CHECKING:
    from hookdeploy.config import HookdeployConfig, TargetHost
    from hookdeploy.notify import RunNotifier
    from hookdeploy.remote import RemoteExecutor
    from hookdeploy.supervisor import ProcessSupervisorClient

logger = logging.getLogger("hookdeploy.pipeline.engine")

# Backstop on top of a stage's own timeout; executor calls time out first
TIMEOUT_GRACE = 5.0


class StageEngine:
    """Runs pipeline runs stage by stage and records their results."""

    def __init__(
        self,
        registry: RunRegistry,
        config: HookdeployConfig,
        *,
        executor: RemoteExecutor,
        supervisor: ProcessSupervisorClient,
        staging_dir: Path,
        handlers: StageHandlerRegistry | None = None,
        notifier: RunNotifier | None = None,
    ):
        self.registry = registry
        self.config = config
        self.executor = executor
        self.supervisor = supervisor
        self.staging_dir = staging_dir
        self.handlers = handlers or StageHandlerRegistry()
        self.notifier = notifier
        self._cancel_requested: set[str] = set()
        self._active: set[str] = set()

    def update_config(self, config: HookdeployConfig) -> None:
        """Swap in a reloaded config. Runs already executing keep their snapshot."""
        self.config = config

    # ── Cancellation ─────────────────────────────────────────────────────────

    def request_cancel(self, run_id: str) -> bool:
        """Ask a running run to stop at the next stage boundary.

        Returns False if the run is not executing in this engine.
        """
        if run_id not in self._active:
            return False
        self._cancel_requested.add(run_id)
        logger.info("Cancellation requested for run %s", run_id)
        return True

    def is_active(self, run_id: str) -> bool:
        return run_id in self._active

    # ── Execution ────────────────────────────────────────────────────────────

    async def execute(self, run: Run) -> RunStatus:
        """Execute a pending run to completion. Returns its terminal status."""
        definition = run.definition()
        run_id = run.run_id
        workspace = self.workspace_for(run)

        # Raises InvalidTransitionError if the run is no longer pending
        await self.registry.mark_running(run_id)
        self._active.add(run_id)
        logger.info(
            "Run %s started (%d stages, targets=%s)",
            run_id,
            len(definition.stages),
            ",".join(definition.targets),
        )

        status = RunStatus.SUCCEEDED
        error_message: str | None = None
        try:
            for position, stage in enumerate(definition.stages):
                if status == RunStatus.SUCCEEDED and run_id in self._cancel_requested:
                    status = RunStatus.CANCELLED
                    error_message = f"Cancelled before stage '{stage.name}'"
                    logger.info("Run %s cancelled before stage '%s'", run_id, stage.name)

                if status != RunStatus.SUCCEEDED:
                    await self.registry.append_stage_result(
                        run_id, _skipped_result(position, stage)
                    )
                    continue

                await self.registry.set_current_stage(run_id, stage.name)
                result = await self._run_stage(run, definition, position, stage, workspace)
                await self.registry.append_stage_result(run_id, result)

                if result.status == StageResultStatus.FAILED:
                    status = RunStatus.FAILED
                    error_message = f"Stage '{stage.name}' failed: {result.error_message}"
                    logger.error("Run %s: %s", run_id, error_message)
        except Exception as exc:
            logger.exception("Run %s aborted", run_id)
            status = RunStatus.FAILED
            error_message = f"Internal error: {type(exc).__name__}: {exc}"
        finally:
            self._active.discard(run_id)
            self._cancel_requested.discard(run_id)
            if not self.config.runtime.keep_staging and workspace.exists():
                await asyncio.to_thread(shutil.rmtree, workspace, True)

        await self.registry.finalize(run_id, status, error_message=error_message)
        logger.info("Run %s finished: %s", run_id, status.value)

        await self._after_run(run_id, definition)
        return status

    def workspace_for(self, run: Run) -> Path:
        return self.staging_dir / run.pipeline_name / str(run.number)

    async def _run_stage(
        self,
        run: Run,
        definition: PipelineDefinition,
        position: int,
        stage: StageSpec,
        workspace: Path,
    ) -> StageResult:
        started_at = datetime.now(timezone.utc)
        timeout = stage.timeout_seconds(self.config.runtime.default_stage_timeout)
        logger.info(
            "Run %s: stage '%s' (%s) starting, timeout %gs",
            run.run_id,
            stage.name,
            stage.kind.value,
            timeout,
        )

        try:
            handler = self.handlers.get(stage.kind)
            if handler is None:
                raise ValidationError(f"No handler registered for stage kind '{stage.kind.value}'")
            ctx = StageContext(
                run=run,
                definition=definition,
                stage=stage,
                targets=self._resolve_targets(definition),
                timeout=timeout,
                workspace=workspace,
                executor=self.executor,
                supervisor=self.supervisor,
                env=self._stage_env(run, definition),
            )
            outcome = await asyncio.wait_for(handler(ctx), timeout=timeout + TIMEOUT_GRACE)
        except asyncio.TimeoutError:
            logger.warning(
                "Run %s: stage '%s' handler did not return within %gs, abandoned",
                run.run_id,
                stage.name,
                timeout + TIMEOUT_GRACE,
            )
            outcome = StageOutcome(
                succeeded=False,
                error_kind=ErrorKind.TIMEOUT,
                error_message=f"Handler did not return within the {timeout:g}s stage timeout",
            )
        except DeployError as exc:
            outcome = StageOutcome.from_error(exc)
        except Exception as exc:
            logger.exception("Unexpected error in stage '%s' of run %s", stage.name, run.run_id)
            outcome = StageOutcome(
                succeeded=False,
                error_kind=ErrorKind.INTERNAL,
                error_message=f"{type(exc).__name__}: {exc}",
            )

        completed_at = datetime.now(timezone.utc)
        status = StageResultStatus.SUCCEEDED if outcome.succeeded else StageResultStatus.FAILED
        logger.info(
            "Run %s: stage '%s' %s in %.1fs",
            run.run_id,
            stage.name,
            status.value,
            (completed_at - started_at).total_seconds(),
        )
        return StageResult(
            position=position,
            stage_name=stage.name,
            kind=stage.kind,
            status=status,
            exit_code=outcome.exit_code,
            output=outcome.output,
            error_kind=outcome.error_kind,
            error_message=outcome.error_message,
            targets=outcome.targets,
            started_at=started_at,
            completed_at=completed_at,
        )

    def _resolve_targets(self, definition: PipelineDefinition) -> list[TargetHost]:
        missing = [name for name in definition.targets if name not in self.config.targets]
        if missing:
            raise ValidationError(f"Unknown target(s): {', '.join(missing)}")
        return [self.config.get_target(name) for name in definition.targets]

    @staticmethod
    def _stage_env(run: Run, definition: PipelineDefinition) -> dict[str, str]:
        env = dict(definition.env)
        env["HOOKDEPLOY_PIPELINE"] = run.pipeline_name
        env["HOOKDEPLOY_RUN_ID"] = run.run_id
        if run.trigger.ref:
            env["HOOKDEPLOY_REF"] = run.trigger.ref
        if run.trigger.commit:
            env["HOOKDEPLOY_COMMIT"] = run.trigger.commit
        return env

    async def _after_run(self, run_id: str, definition: PipelineDefinition) -> None:
        """Retention pruning and notification; neither affects the run's status."""
        keep = self.config.runtime.keep_runs
        if keep:
            pruned = await self.registry.prune(definition.name, keep)
            if pruned:
                logger.info("Pruned %d old run(s) of '%s'", len(pruned), definition.name)

        if self.notifier is not None and definition.notify is not None:
            final = await self.registry.get(run_id)
            if final is not None:
                await self.notifier.notify(final, definition)


def _skipped_result(position: int, stage: StageSpec) -> StageResult:
    now = datetime.now(timezone.utc)
    return StageResult(
        position=position,
        stage_name=stage.name,
        kind=stage.kind,
        status=StageResultStatus.SKIPPED,
        started_at=now,
        completed_at=now,
    )
