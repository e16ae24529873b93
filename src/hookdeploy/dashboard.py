"""Run status API — REST endpoints for querying and controlling runs.

Endpoints:
    Queries:
    - GET /api/pipelines - Configured pipelines with their latest run
    - GET /api/pipelines/{name}/runs - Run history, newest first (?limit=N)
    - GET /api/runs/{run_id} - One run with stage and per-target results
    - GET /api/status - Server and security status

    Control:
    - POST /api/runs/{run_id}/cancel - Cancel a pending or running run
    - POST /api/runs/{run_id}/retry - Queue a new run with the same ref/commit
    - POST /api/admin/reload - Reload configuration from disk

Security:
    All endpoints respect HOOKDEPLOY_API_KEY when configured.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse

from hookdeploy.errors import ValidationError
from hookdeploy.pipeline.models import Run, StageResult
from hookdeploy.security import get_security_config, require_api_key

if TYPE_CHECKING:
    from hookdeploy.pipeline.registry import RunRegistry
    from hookdeploy.trigger import TriggerListener

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["runs"])

ReloadCallback = Callable[[], Awaitable[list[str]]]

# Module-level references (configured at startup)
_registry: RunRegistry | None = None
_listener: TriggerListener | None = None
_reload: ReloadCallback | None = None


def configure(
    registry: RunRegistry,
    listener: TriggerListener,
    reload_callback: ReloadCallback | None = None,
) -> None:
    """Configure the status router with its dependencies."""
    global _registry, _listener, _reload
    _registry = registry
    _listener = listener
    _reload = reload_callback
    logger.info("Run status API configured (reload=%s)", "yes" if reload_callback else "no")


def _require() -> tuple[RunRegistry, TriggerListener]:
    if _registry is None or _listener is None:
        raise HTTPException(status_code=503, detail="Run registry not available")
    return _registry, _listener


# ── Queries ──────────────────────────────────────────────────────────────────


@router.get("/pipelines")
async def list_pipelines(_: bool = Depends(require_api_key)):
    """List configured pipelines with their latest run."""
    registry, listener = _require()
    pipelines = []
    for name, definition in sorted(listener.config.pipelines.items()):
        latest = await registry.list(name, limit=1)
        pipelines.append(
            {
                "name": name,
                "version": definition.version,
                "description": definition.description,
                "repository": definition.repository,
                "branches": list(definition.trigger.branches),
                "targets": list(definition.targets),
                "queue_policy": definition.queue_policy.value,
                "queued": listener.queue_depth(name),
                "stages": [{"name": s.name, "kind": s.kind.value} for s in definition.stages],
                "last_run": _run_summary(latest[0]) if latest else None,
            }
        )
    return {"pipelines": pipelines}


@router.get("/pipelines/{name}/runs")
async def list_runs(
    name: str,
    limit: int = Query(default=20, ge=1, le=500),
    _: bool = Depends(require_api_key),
):
    """Run history of one pipeline, newest first."""
    registry, listener = _require()
    runs = await registry.list(name, limit=limit)
    if not runs and listener.config.get_pipeline(name) is None:
        raise HTTPException(status_code=404, detail=f"Unknown pipeline '{name}'")
    return {"pipeline": name, "runs": [_run_summary(r) for r in runs]}


@router.get("/runs/{run_id}")
async def get_run(run_id: str, _: bool = Depends(require_api_key)):
    """Full detail of one run."""
    registry = _require()[0]
    run = await registry.get(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return _run_detail(run)


@router.get("/status")
async def get_status(_: bool = Depends(require_api_key)):
    """Server and security status."""
    return {
        "status": "ok",
        "registry": _registry is not None,
        "listener": _listener is not None,
        "security": get_security_config(),
    }


# ── Control ──────────────────────────────────────────────────────────────────


@router.post("/runs/{run_id}/cancel")
async def cancel_run(run_id: str, _: bool = Depends(require_api_key)):
    """Cancel a pending run, or request a running one to stop at its next stage."""
    registry, listener = _require()
    run = await registry.get(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    if run.status.is_terminal:
        raise HTTPException(status_code=409, detail=f"Run {run_id} is already {run.status.value}")

    requested = await listener.cancel(run_id)
    current = await registry.get(run_id)
    status = current.status.value if current else run.status.value
    return {"run_id": run_id, "status": status, "cancel_requested": requested}


@router.post("/runs/{run_id}/retry")
async def retry_run(run_id: str, _: bool = Depends(require_api_key)):
    """Queue a new run with the same trigger ref and commit."""
    listener = _require()[1]
    try:
        new_run = await listener.retry(run_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found") from None
    except ValidationError as exc:
        raise HTTPException(status_code=409, detail=exc.message) from exc
    return JSONResponse(
        status_code=202,
        content={"run_id": new_run.run_id, "status": new_run.status.value, "retry_of": run_id},
    )


@router.post("/admin/reload")
async def reload_config(_: bool = Depends(require_api_key)):
    """Reload configuration. A failed reload keeps the current configuration."""
    if _reload is None:
        raise HTTPException(status_code=503, detail="Reload not available")
    try:
        pipelines = await _reload()
    except ValidationError as exc:
        logger.warning("Config reload rejected: %s", exc.message)
        raise HTTPException(status_code=422, detail=exc.message) from exc
    except FileNotFoundError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return {"status": "reloaded", "pipelines": pipelines}


# ── Serialization ────────────────────────────────────────────────────────────


def _iso(dt) -> str | None:
    return dt.isoformat() if dt else None


def _run_summary(run: Run) -> dict[str, Any]:
    return {
        "run_id": run.run_id,
        "pipeline": run.pipeline_name,
        "number": run.number,
        "status": run.status.value,
        "current_stage": run.current_stage,
        "source": run.trigger.source.value,
        "ref": run.trigger.ref,
        "commit": run.trigger.commit,
        "retry_of": run.trigger.retry_of,
        "created_at": _iso(run.created_at),
        "started_at": _iso(run.started_at),
        "completed_at": _iso(run.completed_at),
        "error_message": run.error_message,
    }


def _stage_detail(result: StageResult) -> dict[str, Any]:
    return {
        "position": result.position,
        "name": result.stage_name,
        "kind": result.kind.value,
        "status": result.status.value,
        "exit_code": result.exit_code,
        "output": result.output,
        "error_kind": result.error_kind.value if result.error_kind else None,
        "error_message": result.error_message,
        "started_at": _iso(result.started_at),
        "completed_at": _iso(result.completed_at),
        "duration_seconds": result.duration_seconds,
        "targets": [t.model_dump(mode="json") for t in result.targets],
    }


def _run_detail(run: Run) -> dict[str, Any]:
    detail = _run_summary(run)
    detail["definition_version"] = run.definition_version
    detail["trigger"] = run.trigger.model_dump(mode="json")
    detail["stages"] = [_stage_detail(r) for r in run.stage_results]
    return detail
