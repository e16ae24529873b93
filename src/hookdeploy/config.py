"""Configuration loading for hookdeploy.

Reads .hookdeploy/config.yaml and pipeline definitions from
.hookdeploy/pipelines/*.yaml.  Pydantic models validate the schema; any
error rejects the whole load so a broken definition is never partially
applied.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from hookdeploy.errors import ValidationError
from hookdeploy.pipeline.models import PipelineDefinition

logger = logging.getLogger(__name__)

CONFIG_DIR_ENV = "HOOKDEPLOY_CONFIG_DIR"
DATA_DIR_ENV = "HOOKDEPLOY_DATA_DIR"


# ── Config Models ────────────────────────────────────────────────────────────


class ProjectConfig(BaseModel):
    name: str = "hookdeploy"


class RuntimeConfig(BaseModel):
    default_stage_timeout: float = 600.0  # seconds
    transport_retries: int = 2  # extra attempts after a TransportError
    retry_backoff: float = 2.0  # seconds, doubled per attempt
    ssh_connect_timeout: int = 10  # seconds
    keep_runs: int = 50  # per pipeline, 0 = keep everything
    staging_dir: str | None = None  # default: <data_dir>/staging
    webhook_rate_limit: int = 60  # deliveries per minute, 0 = unlimited
    keep_staging: bool = False  # keep cloned workspaces after a run
    shutdown_grace: float = 30.0  # seconds an in-flight stage gets to finish on stop

    @field_validator("transport_retries", "keep_runs", "webhook_rate_limit")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v


class CredentialConfig(BaseModel):
    """A named SSH identity.

    The private key path may be given directly or through an environment
    variable so deployments can keep it out of the config repo.
    """

    user: str | None = None
    key_path: str | None = None
    key_path_env: str | None = None
    known_hosts: str | None = None
    strict_host_key_checking: bool = True


class TargetHost(BaseModel):
    """A machine that receives artifacts and runs the supervised process."""

    name: str = ""  # filled from the mapping key
    host: str = "localhost"
    port: int = 22
    user: str | None = None
    credential: str | None = None
    workdir: str = "~"
    transport: Literal["ssh", "local"] = "ssh"


class SupervisorConfig(BaseModel):
    backend: Literal["pm2", "supervisord"] = "pm2"
    autorestart: bool = True
    max_restarts: int = 10
    persist: bool = False  # `pm2 save` after each change
    binary: str | None = None  # override pm2 / supervisorctl path
    conf_dir: str = "/etc/supervisor/conf.d"  # supervisord program files


class HookdeployConfig(BaseModel):
    """Top-level configuration (matches .hookdeploy/config.yaml)."""

    project: ProjectConfig = Field(default_factory=ProjectConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    credentials: dict[str, CredentialConfig] = Field(default_factory=dict)
    targets: dict[str, TargetHost] = Field(default_factory=dict)
    pipelines: dict[str, PipelineDefinition] = Field(default_factory=dict)

    def get_pipeline(self, name: str) -> PipelineDefinition | None:
        return self.pipelines.get(name)

    def get_target(self, name: str) -> TargetHost:
        return self.targets[name]

    def validate_references(self) -> list[str]:
        """Check cross references between pipelines, targets and credentials.

        Returns a list of error messages (empty = valid).
        """
        errors: list[str] = []
        for name, target in self.targets.items():
            if target.transport == "ssh":
                if not target.credential:
                    errors.append(f"Target '{name}': ssh targets require 'credential'")
                elif target.credential not in self.credentials:
                    errors.append(
                        f"Target '{name}' references unknown credential '{target.credential}'"
                    )
        for name, pipeline in self.pipelines.items():
            for target_name in pipeline.targets:
                if target_name not in self.targets:
                    errors.append(
                        f"Pipeline '{name}' references unknown target '{target_name}'"
                    )
            if any(s.kind.value == "clone" for s in pipeline.stages) and not pipeline.repository:
                errors.append(f"Pipeline '{name}': clone stages require 'repository'")
        return errors


# ── Config Loader ────────────────────────────────────────────────────────────


def resolve_config_dir(repo_root: Path) -> Path:
    """Config directory, honoring HOOKDEPLOY_CONFIG_DIR."""
    config_dir = os.environ.get(CONFIG_DIR_ENV, "").strip()
    return Path(config_dir) if config_dir else repo_root / ".hookdeploy"


def resolve_data_dir(repo_root: Path) -> Path:
    """Data directory (database + staging), honoring HOOKDEPLOY_DATA_DIR."""
    data_dir = os.environ.get(DATA_DIR_ENV, "").strip()
    return Path(data_dir) if data_dir else repo_root / ".hookdeploy-data"


def load_config(config_dir: Path) -> HookdeployConfig:
    """Load configuration from a .hookdeploy/ directory.

    Args:
        config_dir: Path to the .hookdeploy/ directory.

    Returns:
        Validated HookdeployConfig.

    Raises:
        FileNotFoundError: If config.yaml doesn't exist.
        ValidationError: If the config or any pipeline definition is malformed.
    """
    config_path = config_dir / "config.yaml"
    if not config_path.exists():
        raise FileNotFoundError(f"hookdeploy config not found: {config_path}")

    raw = _read_yaml(config_path)

    pipelines_raw: dict[str, Any] = dict(raw.pop("pipelines", None) or {})
    pipelines_dir = config_dir / "pipelines"
    if pipelines_dir.is_dir():
        for path in sorted(pipelines_dir.glob("*.y*ml")):
            name = path.stem
            if name in pipelines_raw:
                raise ValidationError(
                    f"Pipeline '{name}' is defined both inline and in {path.name}"
                )
            pipelines_raw[name] = _read_yaml(path)

    for name, body in pipelines_raw.items():
        if not isinstance(body, dict):
            raise ValidationError(f"Pipeline '{name}' must be a mapping")
        body.setdefault("name", name)
        if body["name"] != name:
            raise ValidationError(
                f"Pipeline '{name}' declares a different name '{body['name']}'"
            )

    for name, body in (raw.get("targets") or {}).items():
        if isinstance(body, dict):
            body.setdefault("name", name)

    try:
        config = HookdeployConfig(**raw, pipelines=pipelines_raw)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid configuration in {config_dir}:\n{exc}") from exc

    errors = config.validate_references()
    if errors:
        raise ValidationError(
            f"Invalid configuration in {config_dir}:\n" + "\n".join(f"  - {e}" for e in errors)
        )

    logger.info(
        "Loaded hookdeploy config: project=%s, %d pipeline(s), %d target(s)",
        config.project.name,
        len(config.pipelines),
        len(config.targets),
    )
    return config


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ValidationError(f"Malformed YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError(f"{path} must contain a mapping at the top level")
    return data


# ── Default config for `hookdeploy init` ─────────────────────────────────────

DEFAULT_CONFIG = """\
# .hookdeploy/config.yaml — deployment pipeline configuration

project:
  name: "{project_name}"

runtime:
  default_stage_timeout: 600
  transport_retries: 2
  retry_backoff: 2
  keep_runs: 50

credentials:
  deploy-key:
    user: ubuntu
    key_path_env: HOOKDEPLOY_DEPLOY_KEY

targets:
  web1:
    host: 203.0.113.10
    credential: deploy-key
    workdir: /home/ubuntu/app

supervisor:
  backend: pm2
  autorestart: true
"""

DEFAULT_PIPELINE = """\
# .hookdeploy/pipelines/{pipeline_name}.yaml
repository: "{repository}"
trigger:
  branches: [main]
  secret_env: HOOKDEPLOY_WEBHOOK_SECRET
targets: [web1]
stages:
  - name: checkout
    kind: clone
    ref: main
  - name: upload
    kind: transfer
    files: [app.py, requirements.txt]
    destination: /home/ubuntu/app
  - name: install
    kind: remote-command
    command: pip install -r requirements.txt
    timeout: 5m
  - name: launch
    kind: supervisor-directive
    process: {pipeline_name}
    directive: restart
    command: app.py
    interpreter: python3
"""
