"""Trigger listener — turns deliveries into queued runs.

Every accepted trigger becomes a ``pending`` run in the registry before
``handle_event`` returns.  Each pipeline has its own FIFO queue drained by a
single worker task, so runs of one pipeline never overlap while different
pipelines proceed in parallel.

Key exports:
    TriggerListener — handle_event(), enqueue(), cancel(), retry(), recover()
    SignatureVerifier — HMAC-SHA256 webhook signature check
    Accepted, Rejected — handle_event() results
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

from hookdeploy.config import HookdeployConfig
from hookdeploy.errors import InvalidTransitionError, ValidationError
from hookdeploy.pipeline.engine import StageEngine
from hookdeploy.pipeline.models import (
    PipelineDefinition,
    QueuePolicy,
    Run,
    RunStatus,
    TriggerMetadata,
    TriggerSource,
)
from hookdeploy.pipeline.registry import RunRegistry

logger = logging.getLogger(__name__)

REJECT_UNKNOWN_PIPELINE = "unknown_pipeline"
REJECT_AUTH = "auth"
REJECT_BRANCH_FILTERED = "branch_filtered"


@dataclass(frozen=True)
class Accepted:
    run: Run

    @property
    def run_id(self) -> str:
        return self.run.run_id


@dataclass(frozen=True)
class Rejected:
    reason: str  # unknown_pipeline | auth | branch_filtered
    message: str = ""


class SignatureVerifier:
    """Checks ``X-Hub-Signature-256`` against a pipeline's webhook secret."""

    def __init__(self, environ: Mapping[str, str] | None = None):
        self._environ = environ if environ is not None else os.environ

    def secret_for(self, definition: PipelineDefinition) -> str | None:
        env_name = definition.trigger.secret_env
        if not env_name:
            return None
        return self._environ.get(env_name)

    def verify(self, definition: PipelineDefinition, body: bytes, signature: str | None) -> bool:
        env_name = definition.trigger.secret_env
        if not env_name:
            logger.warning(
                "Pipeline '%s' has no webhook secret configured — skipping signature verification",
                definition.name,
            )
            return True

        secret = self.secret_for(definition)
        if secret is None:
            logger.error(
                "Webhook secret variable %s for pipeline '%s' is not set — rejecting delivery",
                env_name,
                definition.name,
            )
            return False

        expected = "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature or "")


def sign_body(secret: str, body: bytes) -> str:
    """Signature header value for ``body`` (what a sender puts in X-Hub-Signature-256)."""
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class TriggerListener:
    """Accepts triggers, persists pending runs and serializes them per pipeline."""

    def __init__(
        self,
        registry: RunRegistry,
        engine: StageEngine,
        config: HookdeployConfig,
        *,
        verifier: SignatureVerifier | None = None,
    ):
        self.registry = registry
        self.engine = engine
        self.config = config
        self.verifier = verifier or SignatureVerifier()
        self._queues: dict[str, asyncio.Queue[str]] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._executing: dict[str, str] = {}  # pipeline -> run_id
        self._stopping = False

    def update_config(self, config: HookdeployConfig) -> None:
        self.config = config

    # ── Inbound triggers ─────────────────────────────────────────────────────

    def authenticate(
        self, pipeline_id: str, body: bytes, signature: str | None
    ) -> Rejected | None:
        """Pipeline lookup and signature check only. Returns None if both pass."""
        definition = self.config.get_pipeline(pipeline_id)
        if definition is None:
            return Rejected(REJECT_UNKNOWN_PIPELINE, f"Unknown pipeline '{pipeline_id}'")
        if not self.verifier.verify(definition, body, signature):
            logger.warning("Invalid webhook signature for pipeline '%s'", pipeline_id)
            return Rejected(REJECT_AUTH, "Invalid signature")
        return None

    async def handle_event(
        self,
        pipeline_id: str,
        trigger: TriggerMetadata,
        *,
        body: bytes,
        signature: str | None,
    ) -> Accepted | Rejected:
        """Authenticate a delivery and queue a run for it."""
        rejected = self.authenticate(pipeline_id, body, signature)
        if rejected is not None:
            return rejected

        definition = self.config.pipelines[pipeline_id]
        if not definition.trigger.matches_ref(trigger.ref):
            logger.info(
                "Pipeline '%s' ignores push to %s (allowed: %s)",
                pipeline_id,
                trigger.ref,
                ", ".join(definition.trigger.branches),
            )
            return Rejected(REJECT_BRANCH_FILTERED, f"Branch of {trigger.ref} is not deployed")

        run = await self.enqueue(pipeline_id, trigger)
        return Accepted(run)

    def pipelines_for_repository(self, url: str) -> list[str]:
        """Names of pipelines whose repository matches ``url``."""
        return [
            name
            for name, definition in self.config.pipelines.items()
            if definition.matches_repository(url)
        ]

    async def enqueue(self, pipeline_id: str, trigger: TriggerMetadata) -> Run:
        """Create a pending run and queue it (no signature check).

        Raises:
            ValidationError: Unknown pipeline.
        """
        definition = self.config.get_pipeline(pipeline_id)
        if definition is None:
            raise ValidationError(f"Unknown pipeline '{pipeline_id}'")

        run = await self.registry.create(pipeline_id, trigger, definition)
        logger.info(
            "Queued run %s (source=%s, ref=%s, commit=%s)",
            run.run_id,
            trigger.source.value,
            trigger.ref,
            trigger.commit,
        )

        if definition.queue_policy == QueuePolicy.SUPERSEDE:
            await self._supersede(run)

        self._queue_for(pipeline_id).put_nowait(run.run_id)
        return run

    async def _supersede(self, newest: Run) -> None:
        pending = await self.registry.list_by_status([RunStatus.PENDING])
        for run in pending:
            if run.pipeline_name != newest.pipeline_name or run.number >= newest.number:
                continue
            try:
                await self.registry.finalize(
                    run.run_id,
                    RunStatus.CANCELLED,
                    error_message=f"Superseded by {newest.run_id}",
                )
            except InvalidTransitionError:
                continue  # picked up by the worker in the meantime
            logger.info("Run %s superseded by %s", run.run_id, newest.run_id)

    # ── Run control ──────────────────────────────────────────────────────────

    async def cancel(self, run_id: str) -> bool:
        """Cancel a run.

        A pending run is finalized ``cancelled`` immediately; a running run is
        asked to stop at its next stage boundary.  Returns False if the run is
        unknown or already terminal.
        """
        run = await self.registry.get(run_id)
        if run is None or run.status.is_terminal:
            return False

        if run.status == RunStatus.PENDING:
            try:
                await self.registry.finalize(
                    run_id, RunStatus.CANCELLED, error_message="Cancelled before start"
                )
                logger.info("Run %s cancelled while pending", run_id)
                return True
            except InvalidTransitionError:
                pass  # started in the meantime; fall through to running

        return self.engine.request_cancel(run_id)

    async def retry(self, run_id: str) -> Run:
        """Queue a new run with the same ref and commit as a finished one.

        Raises:
            KeyError: Unknown run.
            ValidationError: The run is still active or its pipeline is gone.
        """
        original = await self.registry.get(run_id)
        if original is None:
            raise KeyError(run_id)
        if not original.status.is_terminal:
            raise ValidationError(f"Run '{run_id}' is still {original.status.value}")

        trigger = original.trigger.model_copy(
            update={"source": TriggerSource.RETRY, "retry_of": run_id, "delivery_id": None}
        )
        return await self.enqueue(original.pipeline_name, trigger)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def recover(self) -> tuple[int, int]:
        """Reconcile runs left over from a previous process.

        Runs still ``running`` were interrupted and are marked failed;
        ``pending`` runs are queued again in run number order.

        Returns (interrupted, requeued) counts.
        """
        interrupted = await self.registry.list_by_status([RunStatus.RUNNING])
        for run in interrupted:
            await self.registry.finalize(
                run.run_id, RunStatus.FAILED, error_message="Interrupted by restart"
            )
            logger.warning("Run %s was interrupted by a restart — marked failed", run.run_id)

        pending = await self.registry.list_by_status([RunStatus.PENDING])
        pending.sort(key=lambda r: (r.pipeline_name, r.number))
        for run in pending:
            self._queue_for(run.pipeline_name).put_nowait(run.run_id)

        if interrupted or pending:
            logger.info(
                "Recovery: %d interrupted run(s) failed, %d pending run(s) re-queued",
                len(interrupted),
                len(pending),
            )
        return len(interrupted), len(pending)

    async def drain(self) -> None:
        """Wait until every queued run has been processed."""
        await asyncio.gather(*(q.join() for q in list(self._queues.values())))

    async def stop(self, grace: float | None = None) -> None:
        """Stop all workers. Runs still queued stay pending in the registry.

        Executing runs are cancelled at their next stage boundary. The stage
        in flight gets ``grace`` seconds (default ``runtime.shutdown_grace``)
        to finish; after that its worker is cancelled outright and the run is
        left ``running`` for ``recover()`` to mark interrupted.
        """
        self._stopping = True
        if grace is None:
            grace = self.config.runtime.shutdown_grace

        busy: list[asyncio.Task] = []
        for pipeline_id, task in self._workers.items():
            run_id = self._executing.get(pipeline_id)
            if run_id is None:
                task.cancel()
            else:
                self.engine.request_cancel(run_id)
                busy.append(task)

        if busy:
            logger.info(
                "Waiting up to %gs for %d executing run(s) to reach a stage boundary",
                grace,
                len(busy),
            )
            _, overdue = await asyncio.wait(busy, timeout=max(grace, 0))
            for task in overdue:
                logger.warning("Shutdown grace expired; cancelling %s", task.get_name())
                task.cancel()

        await asyncio.gather(*self._workers.values(), return_exceptions=True)
        self._workers.clear()
        self._executing.clear()
        logger.info("Trigger listener stopped")

    def queue_depth(self, pipeline_id: str) -> int:
        queue = self._queues.get(pipeline_id)
        return queue.qsize() if queue else 0

    # ── Workers ──────────────────────────────────────────────────────────────

    def _queue_for(self, pipeline_id: str) -> asyncio.Queue[str]:
        queue = self._queues.get(pipeline_id)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[pipeline_id] = queue
        if not self._stopping and pipeline_id not in self._workers:
            self._workers[pipeline_id] = asyncio.create_task(
                self._worker(pipeline_id, queue), name=f"hookdeploy-worker-{pipeline_id}"
            )
        return queue

    async def _worker(self, pipeline_id: str, queue: asyncio.Queue[str]) -> None:
        logger.debug("Worker for pipeline '%s' started", pipeline_id)
        while not self._stopping:
            run_id = await queue.get()
            try:
                run = await self.registry.get(run_id)
                if run is None or run.status != RunStatus.PENDING:
                    logger.info("Skipping run %s (no longer pending)", run_id)
                    continue
                self._executing[pipeline_id] = run_id
                await self.engine.execute(run)
            except InvalidTransitionError as exc:
                logger.info("Skipping run %s: %s", run_id, exc)
            except Exception:
                logger.exception("Worker for pipeline '%s' failed on run %s", pipeline_id, run_id)
            finally:
                self._executing.pop(pipeline_id, None)
                queue.task_done()
