"""Run completion notifications via HTTP POST.

Best effort: a failed delivery is logged and never changes the run's
status.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from hookdeploy.pipeline.models import PipelineDefinition, Run

logger = logging.getLogger(__name__)

USER_AGENT = "hookdeploy/0.1.0"


class RunNotifier:
    """Posts a JSON summary to a pipeline's ``notify.url`` when a run ends."""

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client
        self._owns_client = client is None

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(headers={"User-Agent": USER_AGENT})
            self._owns_client = True
        logger.info("Run notifier started")

    async def close(self) -> None:
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Run notifier not started")
        return self._client

    async def notify(self, run: Run, definition: PipelineDefinition) -> bool:
        """Deliver the notification for a finished run.

        Returns True if a notification was delivered, False if none was
        configured for this status or delivery failed.
        """
        cfg = definition.notify
        if cfg is None or run.status.value not in cfg.on:
            return False

        try:
            response = await self.client.post(cfg.url, json=build_payload(run), timeout=cfg.timeout)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Notification for run %s to %s failed: %s", run.run_id, cfg.url, exc)
            return False

        logger.info("Notified %s of run %s (%s)", cfg.url, run.run_id, run.status.value)
        return True


def build_payload(run: Run) -> dict[str, Any]:
    """Summary posted for a finished run."""
    failed = next((r for r in run.stage_results if r.status.value == "failed"), None)
    return {
        "run_id": run.run_id,
        "pipeline": run.pipeline_name,
        "number": run.number,
        "status": run.status.value,
        "ref": run.trigger.ref,
        "commit": run.trigger.commit,
        "source": run.trigger.source.value,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "completed_at": run.completed_at.isoformat() if run.completed_at else None,
        "error": run.error_message,
        "failed_stage": failed.stage_name if failed else None,
        "stages": [
            {
                "name": r.stage_name,
                "status": r.status.value,
                "error_kind": r.error_kind.value if r.error_kind else None,
            }
            for r in run.stage_results
        ],
    }
