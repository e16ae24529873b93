"""Tests for configuration loading — config.yaml, pipeline files, reference checks."""

from __future__ import annotations

import textwrap

import pytest

from hookdeploy.config import (
    CONFIG_DIR_ENV,
    DATA_DIR_ENV,
    DEFAULT_CONFIG,
    DEFAULT_PIPELINE,
    load_config,
    resolve_config_dir,
    resolve_data_dir,
)
from hookdeploy.errors import ValidationError
from hookdeploy.pipeline.models import QueuePolicy, StageKind


BASE_CONFIG = """\
project:
  name: demo
runtime:
  default_stage_timeout: 120
  keep_runs: 5
credentials:
  deploy:
    user: ubuntu
    key_path: /tmp/id_ed25519
targets:
  web1:
    host: 203.0.113.10
    credential: deploy
    workdir: /srv/app
  box:
    transport: local
    workdir: /tmp
"""

WEB_PIPELINE = """\
repository: git@github.com:acme/web.git
trigger:
  branches: [main]
  secret_env: WEB_SECRET
targets: [web1]
stages:
  - name: checkout
    kind: clone
  - name: upload
    kind: transfer
    files: [app.js]
    destination: /srv/app
  - name: launch
    kind: supervisor-directive
    process: web
    directive: restart
    command: app.js
"""


def write_config(tmp_path, config: str = BASE_CONFIG, pipelines: dict[str, str] | None = None):
    config_dir = tmp_path / ".hookdeploy"
    config_dir.mkdir()
    (config_dir / "config.yaml").write_text(textwrap.dedent(config))
    if pipelines:
        (config_dir / "pipelines").mkdir()
        for name, body in pipelines.items():
            (config_dir / "pipelines" / f"{name}.yaml").write_text(textwrap.dedent(body))
    return config_dir


class TestLoadConfig:
    def test_loads_targets_and_pipeline_files(self, tmp_path):
        config_dir = write_config(tmp_path, pipelines={"web": WEB_PIPELINE})
        config = load_config(config_dir)

        assert config.project.name == "demo"
        assert config.runtime.default_stage_timeout == 120
        assert config.runtime.keep_runs == 5
        assert set(config.targets) == {"web1", "box"}
        assert config.targets["web1"].name == "web1"
        assert config.targets["box"].transport == "local"

        web = config.get_pipeline("web")
        assert web is not None
        assert web.name == "web"
        assert [s.kind for s in web.stages] == [
            StageKind.CLONE,
            StageKind.TRANSFER,
            StageKind.SUPERVISOR_DIRECTIVE,
        ]
        assert web.queue_policy == QueuePolicy.FIFO

    def test_inline_pipelines(self, tmp_path):
        config = BASE_CONFIG + textwrap.dedent(
            """\
            pipelines:
              jobs:
                targets: [box]
                stages:
                  - name: migrate
                    kind: remote-command
                    command: ./migrate.sh
                    timeout: 5m
            """
        )
        loaded = load_config(write_config(tmp_path, config))
        jobs = loaded.get_pipeline("jobs")
        assert jobs is not None
        assert jobs.stages[0].timeout_seconds(600) == 300

    def test_missing_config_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope")

    def test_defaults_when_sections_missing(self, tmp_path):
        config_dir = tmp_path / ".hookdeploy"
        config_dir.mkdir()
        (config_dir / "config.yaml").write_text("project:\n  name: bare\n")
        config = load_config(config_dir)
        assert config.pipelines == {}
        assert config.supervisor.backend == "pm2"
        assert config.runtime.transport_retries == 2

    def test_pipeline_defined_twice(self, tmp_path):
        config = BASE_CONFIG + "pipelines:\n  web:\n    targets: [web1]\n"
        config_dir = write_config(tmp_path, config, pipelines={"web": WEB_PIPELINE})
        with pytest.raises(ValidationError, match="both inline and in web.yaml"):
            load_config(config_dir)

    def test_pipeline_name_mismatch(self, tmp_path):
        body = "name: other\n" + WEB_PIPELINE
        config_dir = write_config(tmp_path, pipelines={"web": body})
        with pytest.raises(ValidationError, match="different name"):
            load_config(config_dir)

    def test_malformed_yaml(self, tmp_path):
        config_dir = write_config(tmp_path, pipelines={"web": "stages: [unclosed\n"})
        with pytest.raises(ValidationError, match="Malformed YAML"):
            load_config(config_dir)

    def test_top_level_must_be_mapping(self, tmp_path):
        config_dir = write_config(tmp_path, "- just\n- a list\n")
        with pytest.raises(ValidationError, match="mapping"):
            load_config(config_dir)

    def test_invalid_stage_rejects_whole_load(self, tmp_path):
        bad = WEB_PIPELINE.replace("command: app.js\n", "")
        ok = "targets: [box]\nstages:\n  - {name: hi, kind: remote-command, command: echo hi}\n"
        config_dir = write_config(tmp_path, pipelines={"web": bad, "ok": ok})
        with pytest.raises(ValidationError, match="requires 'command'"):
            load_config(config_dir)

    def test_negative_runtime_value(self, tmp_path):
        config = BASE_CONFIG.replace("keep_runs: 5", "keep_runs: -1")
        with pytest.raises(ValidationError, match="must be >= 0"):
            load_config(write_config(tmp_path, config))


class TestReferences:
    def test_unknown_target(self, tmp_path):
        body = WEB_PIPELINE.replace("targets: [web1]", "targets: [web9]")
        config_dir = write_config(tmp_path, pipelines={"web": body})
        with pytest.raises(ValidationError, match="unknown target 'web9'"):
            load_config(config_dir)

    def test_unknown_credential(self, tmp_path):
        config = BASE_CONFIG.replace("credential: deploy", "credential: missing")
        with pytest.raises(ValidationError, match="unknown credential 'missing'"):
            load_config(write_config(tmp_path, config))

    def test_ssh_target_requires_credential(self, tmp_path):
        config = BASE_CONFIG.replace("    credential: deploy\n", "")
        with pytest.raises(ValidationError, match="require 'credential'"):
            load_config(write_config(tmp_path, config))

    def test_clone_requires_repository(self, tmp_path):
        body = WEB_PIPELINE.replace("repository: git@github.com:acme/web.git\n", "")
        config_dir = write_config(tmp_path, pipelines={"web": body})
        with pytest.raises(ValidationError, match="clone stages require 'repository'"):
            load_config(config_dir)


class TestDirectories:
    def test_defaults_under_repo_root(self, tmp_path, monkeypatch):
        monkeypatch.delenv(CONFIG_DIR_ENV, raising=False)
        monkeypatch.delenv(DATA_DIR_ENV, raising=False)
        assert resolve_config_dir(tmp_path) == tmp_path / ".hookdeploy"
        assert resolve_data_dir(tmp_path) == tmp_path / ".hookdeploy-data"

    def test_env_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv(CONFIG_DIR_ENV, "/etc/hookdeploy")
        monkeypatch.setenv(DATA_DIR_ENV, "/var/lib/hookdeploy")
        assert str(resolve_config_dir(tmp_path)) == "/etc/hookdeploy"
        assert str(resolve_data_dir(tmp_path)) == "/var/lib/hookdeploy"


class TestDefaultTemplates:
    def test_init_templates_load(self, tmp_path):
        config_dir = tmp_path / ".hookdeploy"
        (config_dir / "pipelines").mkdir(parents=True)
        (config_dir / "config.yaml").write_text(DEFAULT_CONFIG.format(project_name="demo"))
        (config_dir / "pipelines" / "demo.yaml").write_text(
            DEFAULT_PIPELINE.format(pipeline_name="demo", repository="git@example.com:a/b.git")
        )
        config = load_config(config_dir)
        demo = config.get_pipeline("demo")
        assert demo is not None
        assert demo.trigger.branches == ["main"]
        assert demo.stages[-1].process == "demo"
