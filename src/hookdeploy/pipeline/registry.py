"""Run registry — SQLite persistence for pipeline runs and stage results.

The registry is the durable source of truth for the status surface.  Stage
results are append-only and must arrive in stage order; run status follows
a monotonic state machine (pending → running → terminal, or pending →
cancelled).

Key exports:
    RunRegistry — create/mark_running/append_stage_result/finalize/get/list/prune
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import datetime, timezone

import aiosqlite

from hookdeploy.errors import ErrorKind, InvalidTransitionError
from hookdeploy.pipeline.models import (
    TERMINAL_RUN_STATUSES,
    PipelineDefinition,
    Run,
    RunStatus,
    StageKind,
    StageResult,
    StageResultStatus,
    TargetResult,
    TriggerMetadata,
)

logger = logging.getLogger("hookdeploy.pipeline.registry")

# Allowed source states for each target state
_ALLOWED_TRANSITIONS: dict[RunStatus, tuple[RunStatus, ...]] = {
    RunStatus.RUNNING: (RunStatus.PENDING,),
    RunStatus.SUCCEEDED: (RunStatus.RUNNING,),
    RunStatus.FAILED: (RunStatus.PENDING, RunStatus.RUNNING),
    RunStatus.CANCELLED: (RunStatus.PENDING, RunStatus.RUNNING),
}


class RunRegistry:
    """SQLite-backed persistence for runs.

    Takes an already-open aiosqlite connection (with ``row_factory`` set to
    ``aiosqlite.Row``).  Call `initialize()` to create tables.
    """

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def initialize(self) -> None:
        """Create all tables if they don't exist."""
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()
        logger.info("Run registry tables initialized")

    # ── Run CRUD ─────────────────────────────────────────────────────────────

    async def create(
        self,
        pipeline_name: str,
        trigger: TriggerMetadata,
        definition: PipelineDefinition,
    ) -> Run:
        """Allocate the next run number for a pipeline and insert a pending run."""
        now = datetime.now(timezone.utc)
        # Number allocation and insert happen in one statement so two creates
        # can never be handed the same number.
        cursor = await self._db.execute(
            """
            INSERT INTO runs (
                run_id, pipeline_name, number,
                definition_version, definition_snapshot, trigger,
                status, created_at
            )
            SELECT ? || '-' || next_number, ?, next_number, ?, ?, ?, ?, ?
            FROM (
                SELECT COALESCE(MAX(number), 0) + 1 AS next_number
                FROM runs WHERE pipeline_name = ?
            )
            """,
            (
                pipeline_name,
                pipeline_name,
                definition.version,
                definition.model_dump_json(),
                trigger.model_dump_json(),
                RunStatus.PENDING.value,
                _dt_to_str(now),
                pipeline_name,
            ),
        )
        rowid = cursor.lastrowid
        await self._db.commit()
        cursor = await self._db.execute(
            "SELECT run_id, number FROM runs WHERE rowid = ?", (rowid,)
        )
        row = await cursor.fetchone()

        run = Run(
            run_id=row["run_id"],
            pipeline_name=pipeline_name,
            number=row["number"],
            definition_version=definition.version,
            definition_snapshot=definition.model_dump_json(),
            trigger=trigger,
            status=RunStatus.PENDING,
            created_at=now,
        )
        logger.debug("Created run %s", run.run_id)
        return run

    async def get(self, run_id: str) -> Run | None:
        """Fetch a run (with all stage results) by ID."""
        cursor = await self._db.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        run = _row_to_run(row)
        run.stage_results = await self._get_stage_results(run_id)
        return run

    async def list(self, pipeline_name: str, limit: int = 20) -> list[Run]:
        """Latest ``limit`` runs of a pipeline, newest first."""
        cursor = await self._db.execute(
            "SELECT * FROM runs WHERE pipeline_name = ? ORDER BY number DESC LIMIT ?",
            (pipeline_name, limit),
        )
        rows = await cursor.fetchall()
        runs = [_row_to_run(r) for r in rows]
        for run in runs:
            run.stage_results = await self._get_stage_results(run.run_id)
        return runs

    async def list_by_status(self, statuses: Iterable[RunStatus]) -> list[Run]:
        """All runs in any of the given statuses, oldest first."""
        values = [s.value for s in statuses]
        if not values:
            return []
        placeholders = ", ".join("?" for _ in values)
        cursor = await self._db.execute(
            f"SELECT * FROM runs WHERE status IN ({placeholders}) "
            "ORDER BY pipeline_name, number",
            values,
        )
        rows = await cursor.fetchall()
        return [_row_to_run(r) for r in rows]

    async def pipeline_names(self) -> list[str]:
        """Every pipeline name that has at least one run."""
        cursor = await self._db.execute("SELECT DISTINCT pipeline_name FROM runs ORDER BY 1")
        rows = await cursor.fetchall()
        return [r[0] for r in rows]

    # ── State Machine ────────────────────────────────────────────────────────

    async def mark_running(self, run_id: str) -> datetime:
        """Transition a pending run to running. Returns the start timestamp."""
        started_at = datetime.now(timezone.utc)
        await self._transition(run_id, RunStatus.RUNNING, started_at=started_at)
        return started_at

    async def finalize(
        self,
        run_id: str,
        status: RunStatus,
        *,
        error_message: str | None = None,
    ) -> datetime:
        """Move a run into a terminal state. Returns the completion timestamp."""
        if status not in TERMINAL_RUN_STATUSES:
            msg = f"finalize() needs a terminal status, got '{status.value}'"
            raise InvalidTransitionError(msg)
        completed_at = datetime.now(timezone.utc)
        await self._transition(
            run_id, status, completed_at=completed_at, error_message=error_message
        )
        return completed_at

    async def _transition(
        self,
        run_id: str,
        status: RunStatus,
        *,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
        error_message: str | None = None,
    ) -> None:
        allowed = _ALLOWED_TRANSITIONS[status]
        placeholders = ", ".join("?" for _ in allowed)
        cursor = await self._db.execute(
            f"""
            UPDATE runs SET
                status = ?,
                started_at = COALESCE(?, started_at),
                completed_at = COALESCE(?, completed_at),
                error_message = COALESCE(?, error_message),
                current_stage = CASE WHEN ? THEN NULL ELSE current_stage END
            WHERE run_id = ? AND status IN ({placeholders})
            """,
            (
                status.value,
                _dt_to_str(started_at),
                _dt_to_str(completed_at),
                error_message,
                1 if status.is_terminal else 0,
                run_id,
                *[s.value for s in allowed],
            ),
        )
        await self._db.commit()
        if cursor.rowcount == 1:
            logger.debug("Run %s → %s", run_id, status.value)
            return

        current = await self._get_status(run_id)
        if current is None:
            msg = f"Unknown run '{run_id}'"
        else:
            msg = f"Run '{run_id}' cannot move from '{current.value}' to '{status.value}'"
        raise InvalidTransitionError(msg)

    async def _get_status(self, run_id: str) -> RunStatus | None:
        cursor = await self._db.execute("SELECT status FROM runs WHERE run_id = ?", (run_id,))
        row = await cursor.fetchone()
        return RunStatus(row["status"]) if row else None

    async def set_current_stage(self, run_id: str, stage_name: str | None) -> None:
        """Record which stage a running run is executing."""
        await self._db.execute(
            "UPDATE runs SET current_stage = ? WHERE run_id = ? AND status = ?",
            (stage_name, run_id, RunStatus.RUNNING.value),
        )
        await self._db.commit()

    # ── Stage Results (append-only) ──────────────────────────────────────────

    async def append_stage_result(self, run_id: str, result: StageResult) -> None:
        """Append a terminal stage result.

        Raises ValueError if the result is not terminal or its position is not
        exactly the next slot.
        """
        if result.status not in (
            StageResultStatus.SUCCEEDED,
            StageResultStatus.FAILED,
            StageResultStatus.SKIPPED,
        ):
            msg = f"Stage result for '{result.stage_name}' is not terminal ({result.status.value})"
            raise ValueError(msg)

        cursor = await self._db.execute(
            "SELECT COUNT(*) FROM stage_results WHERE run_id = ?", (run_id,)
        )
        count = (await cursor.fetchone())[0]
        if result.position != count:
            msg = (
                f"Out-of-order stage result for run '{run_id}': "
                f"expected position {count}, got {result.position}"
            )
            raise ValueError(msg)

        await self._db.execute(
            """
            INSERT INTO stage_results (
                run_id, position, stage_name, kind, status,
                exit_code, output, error_kind, error_message, targets,
                started_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run_id,
                result.position,
                result.stage_name,
                result.kind.value,
                result.status.value,
                result.exit_code,
                result.output,
                result.error_kind.value if result.error_kind else None,
                result.error_message,
                json.dumps([t.model_dump(mode="json") for t in result.targets]),
                _dt_to_str(result.started_at),
                _dt_to_str(result.completed_at),
            ),
        )
        await self._db.commit()

    async def _get_stage_results(self, run_id: str) -> list[StageResult]:
        cursor = await self._db.execute(
            "SELECT * FROM stage_results WHERE run_id = ? ORDER BY position",
            (run_id,),
        )
        rows = await cursor.fetchall()
        return [_row_to_stage_result(r) for r in rows]

    # ── Retention ────────────────────────────────────────────────────────────

    async def prune(self, pipeline_name: str, keep: int) -> list[str]:
        """Delete terminal runs beyond the newest ``keep``. Returns deleted run IDs."""
        if keep <= 0:
            return []
        terminal = [s.value for s in TERMINAL_RUN_STATUSES]
        cursor = await self._db.execute(
            """
            SELECT run_id FROM runs
            WHERE pipeline_name = ? AND status IN (?, ?, ?)
            ORDER BY number DESC
            LIMIT -1 OFFSET ?
            """,
            (pipeline_name, *terminal, keep),
        )
        doomed = [r["run_id"] for r in await cursor.fetchall()]
        if not doomed:
            return []
        placeholders = ", ".join("?" for _ in doomed)
        await self._db.execute(
            f"DELETE FROM stage_results WHERE run_id IN ({placeholders})", doomed
        )
        await self._db.execute(f"DELETE FROM runs WHERE run_id IN ({placeholders})", doomed)
        await self._db.commit()
        logger.info("Pruned %d run(s) of pipeline '%s'", len(doomed), pipeline_name)
        return doomed


# ── SQL Schema ───────────────────────────────────────────────────────────────

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS runs (
    run_id TEXT PRIMARY KEY,
    pipeline_name TEXT NOT NULL,
    number INTEGER NOT NULL,

    definition_version INTEGER NOT NULL DEFAULT 1,
    definition_snapshot TEXT NOT NULL DEFAULT '{}',
    trigger TEXT NOT NULL DEFAULT '{}',

    status TEXT NOT NULL DEFAULT 'pending',
    current_stage TEXT,

    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,

    error_message TEXT,

    UNIQUE(pipeline_name, number)
);

CREATE INDEX IF NOT EXISTS idx_runs_status
    ON runs(status);

CREATE TABLE IF NOT EXISTS stage_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES runs(run_id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    stage_name TEXT NOT NULL,
    kind TEXT NOT NULL,
    status TEXT NOT NULL,

    exit_code INTEGER,
    output TEXT NOT NULL DEFAULT '',
    error_kind TEXT,
    error_message TEXT,
    targets TEXT NOT NULL DEFAULT '[]',

    started_at TEXT,
    completed_at TEXT,

    UNIQUE(run_id, position)
);
"""


# ── Row-to-Model Converters ─────────────────────────────────────────────────


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for SQLite storage."""
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    """Parse ISO string from SQLite back to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


def _row_to_run(row: aiosqlite.Row) -> Run:
    """Convert a database row to a Run model (without stage results)."""
    return Run(
        run_id=row["run_id"],
        pipeline_name=row["pipeline_name"],
        number=row["number"],
        definition_version=row["definition_version"],
        definition_snapshot=row["definition_snapshot"],
        trigger=TriggerMetadata.model_validate_json(row["trigger"]),
        status=RunStatus(row["status"]),
        current_stage=row["current_stage"],
        created_at=_str_to_dt(row["created_at"]),
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
        error_message=row["error_message"],
    )


def _row_to_stage_result(row: aiosqlite.Row) -> StageResult:
    """Convert a database row to a StageResult model."""
    targets = json.loads(row["targets"] or "[]")
    return StageResult(
        position=row["position"],
        stage_name=row["stage_name"],
        kind=StageKind(row["kind"]),
        status=StageResultStatus(row["status"]),
        exit_code=row["exit_code"],
        output=row["output"] or "",
        error_kind=ErrorKind(row["error_kind"]) if row["error_kind"] else None,
        error_message=row["error_message"],
        targets=[TargetResult.model_validate(t) for t in targets],
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
    )
