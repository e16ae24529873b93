"""Tests for the hookdeploy command line (init, validate, run)."""

from __future__ import annotations

import sys

import pytest

from hookdeploy.__main__ import main

LOCAL_CONFIG = """\
project:
  name: shop
targets:
  box:
    transport: local
    workdir: {workdir}
"""

LOCAL_PIPELINE = """\
targets: [box]
stages:
  - name: hello
    kind: remote-command
    command: echo hello > hello.txt
  - name: check
    kind: remote-command
    command: {check}
"""


def run_cli(monkeypatch, *args: str) -> int:
    monkeypatch.setattr(sys, "argv", ["hookdeploy", *args])
    try:
        main()
    except SystemExit as exc:
        return exc.code or 0
    return 0


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv("HOOKDEPLOY_CONFIG_DIR", raising=False)
    monkeypatch.delenv("HOOKDEPLOY_DATA_DIR", raising=False)


@pytest.fixture
def local_project(tmp_path):
    def build(check: str = "test -f hello.txt"):
        workdir = tmp_path / "box"
        workdir.mkdir(exist_ok=True)
        pipelines = tmp_path / ".hookdeploy" / "pipelines"
        pipelines.mkdir(parents=True, exist_ok=True)
        (tmp_path / ".hookdeploy" / "config.yaml").write_text(
            LOCAL_CONFIG.format(workdir=workdir)
        )
        (pipelines / "shop.yaml").write_text(LOCAL_PIPELINE.format(check=check))
        return tmp_path

    return build


# ── init ─────────────────────────────────────────────────────────────────────


class TestInit:
    def test_scaffolds_config(self, tmp_path, monkeypatch, capsys):
        repo = tmp_path / "my-app"
        repo.mkdir()

        assert run_cli(monkeypatch, "init", "--repo-root", str(repo)) == 0

        config_dir = repo / ".hookdeploy"
        assert (config_dir / "config.yaml").exists()
        pipeline = config_dir / "pipelines" / "my-app.yaml"
        assert pipeline.exists()
        assert "kind: clone" in pipeline.read_text()
        assert "Initialized hookdeploy project" in capsys.readouterr().out

    def test_scaffold_validates(self, tmp_path, monkeypatch, capsys):
        repo = tmp_path / "svc"
        repo.mkdir()
        run_cli(monkeypatch, "init", "--repo-root", str(repo))
        capsys.readouterr()

        assert run_cli(monkeypatch, "validate", "--repo-root", str(repo)) == 0
        out = capsys.readouterr().out
        assert "Configuration OK" in out
        assert "svc: targets=web1" in out

    def test_refuses_existing_dir(self, tmp_path, monkeypatch, capsys):
        (tmp_path / ".hookdeploy").mkdir()
        assert run_cli(monkeypatch, "init", "--repo-root", str(tmp_path)) == 1
        assert "already exists" in capsys.readouterr().err


# ── validate ─────────────────────────────────────────────────────────────────


class TestValidate:
    def test_missing_config(self, tmp_path, monkeypatch, capsys):
        assert run_cli(monkeypatch, "validate", "--repo-root", str(tmp_path)) == 1
        assert "config not found" in capsys.readouterr().err

    def test_invalid_reference(self, tmp_path, monkeypatch, capsys, local_project):
        repo = local_project()
        (repo / ".hookdeploy" / "pipelines" / "bad.yaml").write_text(
            "targets: [ghost]\nstages:\n  - {name: x, kind: remote-command, command: ls}\n"
        )
        assert run_cli(monkeypatch, "validate", "--repo-root", str(repo)) == 1
        assert "unknown target 'ghost'" in capsys.readouterr().err

    def test_check_credentials(self, tmp_path, monkeypatch, capsys):
        repo = tmp_path / "svc"
        repo.mkdir()
        run_cli(monkeypatch, "init", "--repo-root", str(repo))
        monkeypatch.delenv("HOOKDEPLOY_DEPLOY_KEY", raising=False)
        capsys.readouterr()

        code = run_cli(
            monkeypatch, "validate", "--repo-root", str(repo), "--check-credentials"
        )
        assert code == 1
        assert "Credential error" in capsys.readouterr().err


# ── run ──────────────────────────────────────────────────────────────────────


class TestRun:
    def test_successful_run(self, monkeypatch, capsys, local_project):
        repo = local_project()
        assert run_cli(monkeypatch, "run", "shop", "--repo-root", str(repo)) == 0
        out = capsys.readouterr().out
        assert "Run shop-1: succeeded" in out
        assert (repo / "box" / "hello.txt").read_text().strip() == "hello"

    def test_failed_run(self, monkeypatch, capsys, local_project):
        repo = local_project(check="exit 3")
        assert run_cli(monkeypatch, "run", "shop", "--repo-root", str(repo)) == 1
        out = capsys.readouterr().out
        assert "Run shop-1: failed" in out
        assert "RemoteCommandError" in out

    def test_unknown_pipeline(self, monkeypatch, capsys, local_project):
        repo = local_project()
        assert run_cli(monkeypatch, "run", "nope", "--repo-root", str(repo)) == 1
        assert "unknown pipeline 'nope'" in capsys.readouterr().err

    def test_requires_config_dir(self, tmp_path, monkeypatch, capsys):
        assert run_cli(monkeypatch, "run", "shop", "--repo-root", str(tmp_path)) == 1
        assert "hookdeploy init" in capsys.readouterr().err

    def test_no_command_prints_help(self, monkeypatch, capsys):
        assert run_cli(monkeypatch) == 1
        assert "usage: hookdeploy" in capsys.readouterr().out
