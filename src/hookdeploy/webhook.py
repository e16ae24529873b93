"""Webhook receiver — FastAPI endpoints for push deliveries.

Validates rate limits and HMAC-SHA256 signatures, then hands the delivery
to the TriggerListener.  Responds as soon as the run is queued; the run
itself executes in the background.

Endpoints:
    POST /webhook/{pipeline}  — delivery for a named pipeline
    POST /webhook             — pipeline(s) matched by repository URL
"""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Header, Request, Response
from fastapi.responses import JSONResponse

from hookdeploy.errors import ValidationError
from hookdeploy.pipeline.models import TriggerMetadata, TriggerSource
from hookdeploy.trigger import (
    REJECT_AUTH,
    REJECT_BRANCH_FILTERED,
    REJECT_UNKNOWN_PIPELINE,
    Accepted,
)

if TYPE_CHECKING:
    from hookdeploy.trigger import TriggerListener

logger = logging.getLogger(__name__)

router = APIRouter()

# Set during server startup (see server.py)
_listener: TriggerListener | None = None

# Rate limiting state
_rate_limit_max: int = 60  # max webhook deliveries per window
_rate_limit_window: float = 60.0  # window in seconds
_rate_limit_timestamps: list[float] = []

# A push that deletes a branch carries this as its "after" commit
_NULL_SHA = "0" * 40


def configure(listener: TriggerListener, *, rate_limit_max: int = 60) -> None:
    """Wire the webhook endpoints to the trigger listener.

    Args:
        listener: Receives authenticated deliveries.
        rate_limit_max: Max webhook deliveries per minute (0 = unlimited).
    """
    global _listener, _rate_limit_max, _rate_limit_timestamps
    _listener = listener
    _rate_limit_max = rate_limit_max
    _rate_limit_timestamps = []


def _check_rate_limit() -> bool:
    """Return True if the request is within rate limits."""
    global _rate_limit_timestamps
    if _rate_limit_max <= 0:
        return True

    now = time.monotonic()
    cutoff = now - _rate_limit_window
    _rate_limit_timestamps = [t for t in _rate_limit_timestamps if t > cutoff]

    if len(_rate_limit_timestamps) >= _rate_limit_max:
        return False

    _rate_limit_timestamps.append(now)
    return True


def _reply(status_code: int, status: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": status, **extra})


@router.post("/webhook/{pipeline_name}")
async def handle_pipeline_webhook(
    pipeline_name: str,
    request: Request,
    x_github_event: str = Header(default="push"),
    x_github_delivery: str = Header(default=""),
    x_hub_signature_256: str = Header(default=""),
) -> Response:
    """Receive a push delivery for one pipeline.

    Checks (in order):
    1. Rate limit
    2. Pipeline exists + HMAC-SHA256 signature
    3. Payload shape
    4. Event type (ping / non-push are acknowledged and ignored)
    5. Branch filter, run creation
    """
    if _listener is None:
        return _reply(503, "unavailable")

    if not _check_rate_limit():
        logger.warning("Webhook rate limit exceeded (delivery=%s)", x_github_delivery)
        return _reply(429, "rate_limited")

    body = await request.body()

    rejected = _listener.authenticate(pipeline_name, body, x_hub_signature_256)
    if rejected is not None:
        return _rejection_response(rejected.reason, rejected.message, x_github_delivery)

    early = _early_response(x_github_event, x_github_delivery)
    if early is not None:
        return early

    try:
        trigger = parse_push_payload(body, x_github_delivery)
    except ValidationError as exc:
        logger.warning("Malformed webhook payload (delivery=%s): %s", x_github_delivery, exc)
        return _reply(422, "invalid_payload", detail=exc.message)

    if trigger.commit == _NULL_SHA:
        return _reply(200, "ignored", detail="branch deleted")

    result = await _listener.handle_event(
        pipeline_name, trigger, body=body, signature=x_hub_signature_256
    )
    if isinstance(result, Accepted):
        logger.info(
            "Webhook accepted: %s → run %s (delivery=%s)",
            pipeline_name,
            result.run_id,
            x_github_delivery,
        )
        return _reply(202, result.run.status.value, run_id=result.run_id)
    return _rejection_response(result.reason, result.message, x_github_delivery)


@router.post("/webhook")
async def handle_repository_webhook(
    request: Request,
    x_github_event: str = Header(default="push"),
    x_github_delivery: str = Header(default=""),
    x_hub_signature_256: str = Header(default=""),
) -> Response:
    """Receive a push delivery and route it to every pipeline of its repository."""
    if _listener is None:
        return _reply(503, "unavailable")

    if not _check_rate_limit():
        logger.warning("Webhook rate limit exceeded (delivery=%s)", x_github_delivery)
        return _reply(429, "rate_limited")

    body = await request.body()
    try:
        trigger = parse_push_payload(body, x_github_delivery, require_ref=False)
    except ValidationError as exc:
        return _reply(422, "invalid_payload", detail=exc.message)

    pipelines = _listener.pipelines_for_repository(trigger.repository or "")
    if not pipelines:
        return _reply(404, "unknown_pipeline", detail=f"No pipeline for {trigger.repository}")

    # Every matching pipeline must accept the signature
    for name in pipelines:
        rejected = _listener.authenticate(name, body, x_hub_signature_256)
        if rejected is not None:
            return _rejection_response(rejected.reason, rejected.message, x_github_delivery)

    early = _early_response(x_github_event, x_github_delivery)
    if early is not None:
        return early

    if not trigger.ref:
        return _reply(422, "invalid_payload", detail="Payload has no 'ref'")
    if trigger.commit == _NULL_SHA:
        return _reply(200, "ignored", detail="branch deleted")

    run_ids: list[str] = []
    for name in pipelines:
        result = await _listener.handle_event(
            name, trigger, body=body, signature=x_hub_signature_256
        )
        if isinstance(result, Accepted):
            run_ids.append(result.run_id)

    if not run_ids:
        return _reply(200, "ignored", detail="branch filtered")
    logger.info("Webhook accepted for %s → %s", trigger.repository, ", ".join(run_ids))
    return _reply(202, "pending", run_id=run_ids[0], run_ids=run_ids)


def _early_response(event: str, delivery: str) -> Response | None:
    if event == "ping":
        logger.info("Webhook ping (delivery=%s)", delivery)
        return _reply(200, "pong")
    if event != "push":
        logger.info("Ignoring webhook event '%s' (delivery=%s)", event, delivery)
        return _reply(200, "ignored", detail=f"event '{event}' is not handled")
    return None


def _rejection_response(reason: str, message: str, delivery: str) -> Response:
    if reason == REJECT_UNKNOWN_PIPELINE:
        return _reply(404, reason, detail=message)
    if reason == REJECT_AUTH:
        logger.warning("Rejected webhook delivery %s: %s", delivery, message)
        return _reply(401, reason, detail=message)
    if reason == REJECT_BRANCH_FILTERED:
        return _reply(200, "ignored", detail=message)
    return _reply(400, reason, detail=message)


def parse_push_payload(
    body: bytes, delivery_id: str = "", *, require_ref: bool = True
) -> TriggerMetadata:
    """Build trigger metadata from a GitHub-style push payload.

    Raises:
        ValidationError: Body is not a JSON object or lacks a usable ``ref``.
    """
    try:
        payload = json.loads(body or b"{}")
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError(f"Body is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Payload must be a JSON object")

    ref = payload.get("ref")
    if ref is not None and not isinstance(ref, str):
        raise ValidationError("'ref' must be a string")
    if require_ref and not ref:
        raise ValidationError("Payload has no 'ref'")

    repository = _mapping(payload, "repository")
    head_commit = _mapping(payload, "head_commit")
    pusher = _mapping(payload, "pusher")
    commit = payload.get("after") or head_commit.get("id")

    return TriggerMetadata(
        source=TriggerSource.WEBHOOK,
        ref=ref,
        commit=commit if isinstance(commit, str) else None,
        timestamp=_parse_timestamp(head_commit.get("timestamp")),
        delivery_id=delivery_id or None,
        repository=repository.get("clone_url") or repository.get("html_url"),
        pusher=pusher.get("name"),
    )


def _mapping(payload: dict[str, Any], key: str) -> dict[str, Any]:
    value = payload.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError(f"'{key}' must be an object")
    return value


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
        if parsed is not None:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc)
