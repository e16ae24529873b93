"""Server boot, reload and end-to-end webhook tests.

Everything runs for real (SQLite, FastAPI, config loading, the trigger
listener and the stage engine) against a local-transport target.
"""

from __future__ import annotations

import json
import time

import pytest
from fastapi.testclient import TestClient

from hookdeploy.errors import ValidationError
from hookdeploy.pipeline.models import RunStatus
from hookdeploy.server import DeployServer, create_app
from hookdeploy.trigger import sign_body

SECRET = "e2e-secret"

CONFIG = """\
project:
  name: shop
runtime:
  keep_runs: 10
  webhook_rate_limit: 0
targets:
  box:
    transport: local
    workdir: {workdir}
"""

PIPELINE = """\
repository: https://github.com/acme/shop.git
trigger:
  branches: [main]
  secret_env: SHOP_SECRET
targets: [box]
stages:
  - name: announce
    kind: remote-command
    command: echo "$HOOKDEPLOY_RUN_ID" > deployed.txt
"""


@pytest.fixture
def project(tmp_path, monkeypatch):
    workdir = tmp_path / "box"
    workdir.mkdir()
    config_dir = tmp_path / ".hookdeploy"
    (config_dir / "pipelines").mkdir(parents=True)
    (config_dir / "config.yaml").write_text(CONFIG.format(workdir=workdir))
    (config_dir / "pipelines" / "shop.yaml").write_text(PIPELINE)
    monkeypatch.delenv("HOOKDEPLOY_CONFIG_DIR", raising=False)
    monkeypatch.delenv("HOOKDEPLOY_DATA_DIR", raising=False)
    monkeypatch.setenv("SHOP_SECRET", SECRET)
    return tmp_path


# ── Server lifecycle ─────────────────────────────────────────────────────────


class TestDeployServer:
    async def test_start_and_stop(self, project):
        server = DeployServer(project)
        await server.start()
        try:
            assert server.config.project.name == "shop"
            assert server.registry is not None
            assert server.listener is not None
            assert (project / ".hookdeploy-data" / "runs.db").exists()
        finally:
            await server.stop()
        assert server.db is None

    async def test_run_once(self, project):
        server = DeployServer(project)
        await server.start(recover=False)
        try:
            status = await server.run_once("shop", ref="refs/heads/main")
            [run] = await server.registry.list("shop")
        finally:
            await server.stop()

        assert status == RunStatus.SUCCEEDED
        assert run.run_id == "shop-1"
        assert (project / "box" / "deployed.txt").read_text().strip() == "shop-1"

    async def test_reload_picks_up_new_pipeline(self, project):
        server = DeployServer(project)
        await server.start(recover=False)
        try:
            (project / ".hookdeploy" / "pipelines" / "api.yaml").write_text(
                PIPELINE.replace("deployed.txt", "api.txt")
            )
            assert await server.reload() == ["api", "shop"]
            assert server.listener.config.get_pipeline("api") is not None
        finally:
            await server.stop()

    async def test_reload_failure_keeps_current_config(self, project):
        server = DeployServer(project)
        await server.start(recover=False)
        try:
            (project / ".hookdeploy" / "pipelines" / "broken.yaml").write_text(
                "targets: [nowhere]\nstages:\n  - {name: x, kind: remote-command, command: ls}\n"
            )
            with pytest.raises(ValidationError, match="unknown target"):
                await server.reload()
            assert sorted(server.config.pipelines) == ["shop"]
        finally:
            await server.stop()

    async def test_missing_config(self, tmp_path, monkeypatch):
        monkeypatch.delenv("HOOKDEPLOY_CONFIG_DIR", raising=False)
        with pytest.raises(FileNotFoundError):
            await DeployServer(tmp_path).start()


# ── Through the HTTP app ─────────────────────────────────────────────────────


class TestApp:
    def test_health(self, project):
        with TestClient(create_app(project)) as client:
            response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["project"] == "shop"
        assert data["pipelines"] == ["shop"]
        assert data["runs"] == {"pending": 0, "running": 0}

    def test_push_deploys(self, project, monkeypatch):
        monkeypatch.delenv("HOOKDEPLOY_API_KEY", raising=False)
        body = json.dumps(
            {
                "ref": "refs/heads/main",
                "after": "1a2b3c4d" * 5,
                "repository": {"clone_url": "https://github.com/acme/shop.git"},
            }
        ).encode()

        with TestClient(create_app(project)) as client:
            response = client.post(
                "/webhook/shop",
                content=body,
                headers={
                    "Content-Type": "application/json",
                    "X-GitHub-Event": "push",
                    "X-Hub-Signature-256": sign_body(SECRET, body),
                },
            )
            assert response.status_code == 202
            run_id = response.json()["run_id"]

            deadline = time.monotonic() + 10
            while True:
                run = client.get(f"/api/runs/{run_id}").json()
                if run["status"] in ("succeeded", "failed", "cancelled"):
                    break
                assert time.monotonic() < deadline, f"run stuck in {run['status']}"
                time.sleep(0.05)

        assert run["status"] == "succeeded"
        assert run["trigger"]["commit"] == "1a2b3c4d" * 5
        assert [s["name"] for s in run["stages"]] == ["announce"]
        assert (project / "box" / "deployed.txt").read_text().strip() == run_id
