"""Tests for run completion notifications."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import httpx
import pytest
import pytest_asyncio
import respx

from hookdeploy.errors import ErrorKind
from hookdeploy.notify import RunNotifier, build_payload
from hookdeploy.pipeline.models import (
    PipelineDefinition,
    Run,
    RunStatus,
    StageKind,
    StageResult,
    StageResultStatus,
    TriggerMetadata,
)

HOOK_URL = "https://hooks.example.com/deploys"


def make_definition(**notify) -> PipelineDefinition:
    return PipelineDefinition(
        name="web",
        targets=["web1"],
        notify={"url": HOOK_URL, **notify},
        stages=[{"name": "install", "kind": "remote-command", "command": "npm ci"}],
    )


def make_run(status: RunStatus = RunStatus.FAILED) -> Run:
    now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    failed = status == RunStatus.FAILED
    return Run(
        run_id="web-4",
        pipeline_name="web",
        number=4,
        trigger=TriggerMetadata(ref="refs/heads/main", commit="abc123"),
        status=status,
        started_at=now,
        completed_at=now,
        error_message="Stage 'install' failed: Command exited with status 1" if failed else None,
        stage_results=[
            StageResult(
                position=0,
                stage_name="install",
                kind=StageKind.REMOTE_COMMAND,
                status=StageResultStatus.FAILED if failed else StageResultStatus.SUCCEEDED,
                error_kind=ErrorKind.REMOTE_COMMAND if failed else None,
            )
        ],
    )


@pytest_asyncio.fixture
async def notifier():
    n = RunNotifier()
    await n.start()
    yield n
    await n.close()


class TestNotify:
    @respx.mock
    async def test_posts_summary_on_failure(self, notifier):
        route = respx.post(HOOK_URL).mock(return_value=httpx.Response(204))

        assert await notifier.notify(make_run(), make_definition())

        assert route.called
        request = route.calls.last.request
        body = json.loads(request.content)
        assert body["run_id"] == "web-4"
        assert body["status"] == "failed"
        assert body["failed_stage"] == "install"
        assert body["stages"] == [
            {"name": "install", "status": "failed", "error_kind": "RemoteCommandError"}
        ]
        assert request.headers["user-agent"].startswith("hookdeploy/")

    @respx.mock
    async def test_status_not_subscribed(self, notifier):
        route = respx.post(HOOK_URL).mock(return_value=httpx.Response(204))
        assert not await notifier.notify(make_run(RunStatus.SUCCEEDED), make_definition())
        assert not route.called

    @respx.mock
    async def test_subscribed_to_success(self, notifier):
        route = respx.post(HOOK_URL).mock(return_value=httpx.Response(200))
        definition = make_definition(on=["succeeded", "failed"])
        assert await notifier.notify(make_run(RunStatus.SUCCEEDED), definition)
        assert route.called

    @respx.mock
    async def test_http_error_is_not_raised(self, notifier):
        respx.post(HOOK_URL).mock(return_value=httpx.Response(500))
        assert not await notifier.notify(make_run(), make_definition())

    @respx.mock
    async def test_connection_error_is_not_raised(self, notifier):
        respx.post(HOOK_URL).mock(side_effect=httpx.ConnectError("refused"))
        assert not await notifier.notify(make_run(), make_definition())

    async def test_no_notify_config(self, notifier):
        definition = PipelineDefinition(
            name="web",
            targets=["web1"],
            stages=[{"name": "install", "kind": "remote-command", "command": "npm ci"}],
        )
        assert not await notifier.notify(make_run(), definition)

    def test_requires_start(self):
        with pytest.raises(RuntimeError, match="not started"):
            RunNotifier().client


class TestBuildPayload:
    def test_success_payload(self):
        payload = build_payload(make_run(RunStatus.SUCCEEDED))
        assert payload["failed_stage"] is None
        assert payload["error"] is None
        assert payload["ref"] == "refs/heads/main"
        assert payload["completed_at"] == "2026-03-01T12:00:00+00:00"
