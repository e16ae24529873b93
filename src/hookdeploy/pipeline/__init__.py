"""Deployment pipeline system — definitions, run state, execution.

Key exports:
    StageEngine — Executes runs stage by stage
    StageHandlerRegistry — Stage kind → handler coroutine
    RunRegistry — SQLite persistence
    PipelineDefinition, StageSpec — Pipeline config models
    Run, StageResult, TargetResult — Runtime state models
"""

from hookdeploy.pipeline.engine import StageEngine
from hookdeploy.pipeline.models import (
    NotifyConfig,
    PipelineDefinition,
    QueuePolicy,
    Run,
    RunStatus,
    StageKind,
    StageResult,
    StageResultStatus,
    StageSpec,
    SupervisorDirective,
    TargetResult,
    TriggerFilter,
    TriggerMetadata,
    TriggerSource,
)
from hookdeploy.pipeline.registry import RunRegistry
from hookdeploy.pipeline.stages import (
    StageContext,
    StageHandler,
    StageHandlerRegistry,
    StageOutcome,
)

__all__ = [
    # Engine
    "StageEngine",
    "StageContext",
    "StageHandler",
    "StageHandlerRegistry",
    "StageOutcome",
    # Registry
    "RunRegistry",
    # Definition models
    "PipelineDefinition",
    "StageSpec",
    "TriggerFilter",
    "NotifyConfig",
    # Runtime state models
    "Run",
    "RunStatus",
    "StageResult",
    "StageResultStatus",
    "TargetResult",
    "TriggerMetadata",
    # Enums
    "StageKind",
    "SupervisorDirective",
    "QueuePolicy",
    "TriggerSource",
]
