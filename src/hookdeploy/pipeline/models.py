"""Pipeline Pydantic models — definitions and runtime state.

Key exports:
    Definition models: PipelineDefinition, StageSpec, TriggerFilter, NotifyConfig
    Runtime state models: Run, RunStatus, StageResult, StageResultStatus,
        TargetResult, TriggerMetadata
    Enums: StageKind, SupervisorDirective, QueuePolicy
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from hookdeploy.errors import ErrorKind


# ── Enums ────────────────────────────────────────────────────────────────────


class StageKind(str, Enum):
    """All supported stage kinds."""

    CLONE = "clone"
    TRANSFER = "transfer"
    REMOTE_COMMAND = "remote-command"
    SUPERVISOR_DIRECTIVE = "supervisor-directive"


class SupervisorDirective(str, Enum):
    """Directives a supervisor-directive stage can issue."""

    START = "start"
    STOP = "stop"
    STOP_IF_RUNNING = "stop-if-running"
    RESTART = "restart"


class QueuePolicy(str, Enum):
    """What happens to queued runs when a new trigger arrives."""

    FIFO = "fifo"
    SUPERSEDE = "supersede"


class RunStatus(str, Enum):
    """Run lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES


TERMINAL_RUN_STATUSES = frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED})


class StageResultStatus(str, Enum):
    """Stage result lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class TriggerSource(str, Enum):
    WEBHOOK = "webhook"
    MANUAL = "manual"
    RETRY = "retry"


# ── Stage name validation ────────────────────────────────────────────────────

STAGE_NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]*$")
PIPELINE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")


# ── Definition Models (parsed from YAML config) ─────────────────────────────


class TriggerFilter(BaseModel):
    """Which pushes start a pipeline and how deliveries are authenticated."""

    model_config = ConfigDict(frozen=True)

    branches: list[str] = []  # empty = any branch
    secret_env: str | None = None  # env var holding the webhook secret

    def matches_ref(self, ref: str | None) -> bool:
        """Check if a pushed ref passes the branch allow-list."""
        if not self.branches:
            return True
        return branch_from_ref(ref) in self.branches


class NotifyConfig(BaseModel):
    """Where to POST a summary when a run ends."""

    model_config = ConfigDict(frozen=True)

    url: str
    on: list[str] = ["failed"]  # run statuses that trigger a notification
    timeout: float = 10.0


class StageSpec(BaseModel):
    """A single stage in a pipeline definition.

    This is a union type — the valid fields depend on ``kind``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    kind: StageKind
    timeout: str | float | None = None  # "30s" / "5m" or plain seconds

    # Clone stage fields
    ref: str | None = None
    depth: int | None = None

    # Transfer stage fields
    files: list[str] = []
    destination: str | None = None

    # Remote-command stage fields (also the program for supervisor stages)
    command: str | None = None

    # Supervisor-directive stage fields
    process: str | None = None
    directive: SupervisorDirective | None = None
    args: list[str] = []
    interpreter: str | None = None

    @model_validator(mode="after")
    def validate_stage(self) -> StageSpec:
        if not STAGE_NAME_PATTERN.match(self.name):
            msg = f"Stage name '{self.name}' must match pattern {STAGE_NAME_PATTERN.pattern}"
            raise ValueError(msg)

        if isinstance(self.timeout, str):
            parse_duration_seconds(self.timeout)
        elif self.timeout is not None and self.timeout <= 0:
            msg = f"Stage '{self.name}': timeout must be positive"
            raise ValueError(msg)

        match self.kind:
            case StageKind.CLONE:
                if self.depth is not None and self.depth < 1:
                    msg = f"Stage '{self.name}': clone depth must be >= 1"
                    raise ValueError(msg)
            case StageKind.TRANSFER:
                if not self.files:
                    msg = f"Stage '{self.name}': transfer stages require 'files'"
                    raise ValueError(msg)
                if not self.destination:
                    msg = f"Stage '{self.name}': transfer stages require 'destination'"
                    raise ValueError(msg)
            case StageKind.REMOTE_COMMAND:
                if not self.command:
                    msg = f"Stage '{self.name}': remote-command stages require 'command'"
                    raise ValueError(msg)
            case StageKind.SUPERVISOR_DIRECTIVE:
                if not self.process:
                    msg = f"Stage '{self.name}': supervisor-directive stages require 'process'"
                    raise ValueError(msg)
                if self.directive is None:
                    msg = f"Stage '{self.name}': supervisor-directive stages require 'directive'"
                    raise ValueError(msg)
                if (
                    self.directive in (SupervisorDirective.START, SupervisorDirective.RESTART)
                    and not self.command
                ):
                    msg = (
                        f"Stage '{self.name}': '{self.directive.value}' directive "
                        "requires 'command'"
                    )
                    raise ValueError(msg)

        return self

    def timeout_seconds(self, default: float) -> float:
        """Stage timeout in seconds, falling back to ``default``."""
        if self.timeout is None:
            return default
        if isinstance(self.timeout, str):
            return float(parse_duration_seconds(self.timeout))
        return float(self.timeout)


class PipelineDefinition(BaseModel):
    """Complete pipeline definition parsed from YAML config.

    Frozen: a reload produces new definitions, running runs keep executing
    the snapshot they were created with.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    version: int = 1
    description: str = ""
    repository: str = ""
    trigger: TriggerFilter = Field(default_factory=TriggerFilter)
    targets: list[str] = Field(min_length=1)
    env: dict[str, str] = {}
    queue_policy: QueuePolicy = QueuePolicy.FIFO
    notify: NotifyConfig | None = None
    stages: list[StageSpec] = Field(min_length=1)

    @model_validator(mode="after")
    def validate_pipeline(self) -> PipelineDefinition:
        if not PIPELINE_NAME_PATTERN.match(self.name):
            msg = f"Pipeline name '{self.name}' must match pattern {PIPELINE_NAME_PATTERN.pattern}"
            raise ValueError(msg)
        names = [s.name for s in self.stages]
        dupes = [n for n in names if names.count(n) > 1]
        if dupes:
            msg = f"Duplicate stage names: {sorted(set(dupes))}"
            raise ValueError(msg)
        dupe_targets = [t for t in self.targets if self.targets.count(t) > 1]
        if dupe_targets:
            msg = f"Duplicate targets: {sorted(set(dupe_targets))}"
            raise ValueError(msg)
        transfer_idx = self.get_stage_index_by_kind(StageKind.TRANSFER)
        if transfer_idx is not None:
            clone_idx = self.get_stage_index_by_kind(StageKind.CLONE)
            if clone_idx is None or clone_idx > transfer_idx:
                msg = "Transfer stages need a clone stage before them"
                raise ValueError(msg)
        return self

    def get_stage(self, name: str) -> StageSpec | None:
        """Look up a stage by name."""
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None

    def get_stage_index_by_kind(self, kind: StageKind) -> int | None:
        """Index of the first stage of the given kind."""
        for i, stage in enumerate(self.stages):
            if stage.kind == kind:
                return i
        return None

    def matches_repository(self, url: str) -> bool:
        """Check if a repository URL from a payload refers to this pipeline's repo."""
        if not self.repository or not url:
            return False
        return _normalize_repo_url(self.repository) == _normalize_repo_url(url)


# ── Runtime State Models (persisted in SQLite) ───────────────────────────────


class TriggerMetadata(BaseModel):
    """What caused a run."""

    source: TriggerSource = TriggerSource.WEBHOOK
    ref: str | None = None
    commit: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    delivery_id: str | None = None
    repository: str | None = None
    pusher: str | None = None
    retry_of: str | None = None

    @property
    def branch(self) -> str | None:
        return branch_from_ref(self.ref)


class TargetResult(BaseModel):
    """Outcome of one stage on one target host."""

    target: str
    status: StageResultStatus
    exit_code: int | None = None
    output: str = ""
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    details: dict[str, Any] = {}


class StageResult(BaseModel):
    """Outcome of one stage within a run. Immutable once appended."""

    position: int
    stage_name: str
    kind: StageKind
    status: StageResultStatus = StageResultStatus.PENDING
    exit_code: int | None = None
    output: str = ""
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    targets: list[TargetResult] = []
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class Run(BaseModel):
    """Runtime state of one pipeline execution."""

    run_id: str
    pipeline_name: str
    number: int
    definition_version: int = 1
    definition_snapshot: str = "{}"  # JSON-serialized PipelineDefinition
    trigger: TriggerMetadata = Field(default_factory=TriggerMetadata)

    status: RunStatus = RunStatus.PENDING
    current_stage: str | None = None
    stage_results: list[StageResult] = []

    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    error_message: str | None = None

    def definition(self) -> PipelineDefinition:
        """Rebuild the definition this run was created from."""
        return PipelineDefinition.model_validate_json(self.definition_snapshot)


# ── Helpers ──────────────────────────────────────────────────────────────────


def branch_from_ref(ref: str | None) -> str | None:
    """``refs/heads/main`` → ``main``; plain branch names pass through."""
    if not ref:
        return None
    for prefix in ("refs/heads/", "refs/tags/"):
        if ref.startswith(prefix):
            return ref[len(prefix) :]
    return ref


def _normalize_repo_url(url: str) -> str:
    url = url.strip().rstrip("/")
    if url.endswith(".git"):
        url = url[:-4]
    # git@github.com:owner/repo → github.com/owner/repo
    if url.startswith("git@"):
        url = url[4:].replace(":", "/", 1)
    for prefix in ("https://", "http://", "ssh://git@", "ssh://", "git://"):
        if url.startswith(prefix):
            url = url[len(prefix) :]
            break
    return url.lower()


def parse_duration_seconds(duration: str) -> int:
    """Parse a duration string like '30s', '5m', '2h', '1d' to seconds.

    Raises ValueError on invalid format.
    """
    match = re.match(r"^(\d+)\s*(s|m|h|d)$", duration.strip())
    if not match:
        msg = f"Invalid duration format: '{duration}'. Expected <number><s|m|h|d>"
        raise ValueError(msg)
    value = int(match.group(1))
    unit = match.group(2)
    multipliers = {"s": 1, "m": 60, "h": 3600, "d": 86400}
    return value * multipliers[unit]
