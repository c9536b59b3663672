"""Engine store — SQLite persistence for work orders, operations, and audit rows.

One aiosqlite connection per engine process, opened in autocommit mode.
``transaction()`` wraps a block in ``BEGIN IMMEDIATE … COMMIT`` and holds an
in-process lock so statements from other coroutines can't land inside it.
Other processes are serialized by SQLite itself (WAL + busy_timeout).

Claims and leases are single conditional writes; their success is the
statement's rowcount. Completion tokens rely on the primary-key constraint.

Timestamps are stored as UTC ISO-8601 strings with microseconds so that
lexical comparison in SQL matches chronological order.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

import aiosqlite

from stagehand.activity import Activity, ActivityType
from stagehand.models import (
    CLAIMABLE_OPERATION_STATUSES,
    OPEN_OPERATION_STATUSES,
    Agent,
    AgentSession,
    AgentStatus,
    Approval,
    ApprovalStatus,
    ApprovalType,
    Artifact,
    ArtifactType,
    EscalationReason,
    ExecutionType,
    Operation,
    OperationStatus,
    OperationStory,
    Receipt,
    StoryStatus,
    WorkOrder,
    WorkOrderState,
    decode_loop_payload,
    encode_loop_payload,
    utcnow,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS work_orders (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    goal TEXT NOT NULL DEFAULT '',
    priority TEXT NOT NULL DEFAULT 'P2',
    tags TEXT NOT NULL DEFAULT '[]',
    state TEXT NOT NULL DEFAULT 'planned',
    workflow_id TEXT,
    current_stage INTEGER NOT NULL DEFAULT 0,
    blocked_reason TEXT,
    shipped_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS operations (
    id TEXT PRIMARY KEY,
    work_order_id TEXT NOT NULL REFERENCES work_orders(id),
    title TEXT NOT NULL,
    notes TEXT,
    status TEXT NOT NULL DEFAULT 'todo',
    workflow_id TEXT NOT NULL,
    workflow_stage_index INTEGER NOT NULL,
    iteration_count INTEGER NOT NULL DEFAULT 0,
    execution_type TEXT NOT NULL DEFAULT 'single',
    loop_config_json TEXT,
    current_story_id TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 2,
    timeout_count INTEGER NOT NULL DEFAULT 0,
    claimed_by TEXT,
    claim_expires_at TEXT,
    last_claimed_at TEXT,
    blocked_reason TEXT,
    escalation_reason TEXT,
    escalated_at TEXT,
    assignee_agent_ids TEXT NOT NULL DEFAULT '[]',
    loop_target_op_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS operation_stories (
    id TEXT PRIMARY KEY,
    operation_id TEXT NOT NULL REFERENCES operations(id),
    work_order_id TEXT NOT NULL,
    story_index INTEGER NOT NULL,
    story_key TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    acceptance_criteria TEXT NOT NULL DEFAULT '[]',
    status TEXT NOT NULL DEFAULT 'pending',
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 2,
    output_json TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(operation_id, story_index)
);

CREATE TABLE IF NOT EXISTS approvals (
    id TEXT PRIMARY KEY,
    work_order_id TEXT NOT NULL,
    operation_id TEXT,
    type TEXT NOT NULL,
    question_md TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS activities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL,
    actor TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    summary TEXT NOT NULL,
    payload_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS receipts (
    id TEXT PRIMARY KEY,
    work_order_id TEXT NOT NULL,
    operation_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    command_name TEXT NOT NULL,
    command_args_json TEXT NOT NULL DEFAULT '{}',
    exit_code INTEGER NOT NULL,
    parsed_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS artifacts (
    id TEXT PRIMARY KEY,
    work_order_id TEXT NOT NULL,
    operation_id TEXT NOT NULL,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    path_or_url TEXT NOT NULL,
    created_by TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS operation_completion_tokens (
    token TEXT PRIMARY KEY,
    operation_id TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS agents (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    display_name TEXT NOT NULL DEFAULT '',
    role TEXT NOT NULL,
    station TEXT,
    status TEXT NOT NULL DEFAULT 'idle',
    session_key TEXT,
    capabilities TEXT NOT NULL DEFAULT '[]',
    wip_limit INTEGER NOT NULL DEFAULT 2
);

CREATE TABLE IF NOT EXISTS agent_sessions (
    session_key TEXT PRIMARY KEY,
    agent_id TEXT,
    operation_id TEXT,
    work_order_id TEXT,
    state TEXT NOT NULL DEFAULT 'active',
    last_seen_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS engine_leases (
    lease_key TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_work_orders_state ON work_orders(state, created_at);
CREATE INDEX IF NOT EXISTS idx_operations_wo ON operations(work_order_id, status);
CREATE INDEX IF NOT EXISTS idx_operations_status ON operations(status, updated_at);
CREATE INDEX IF NOT EXISTS idx_stories_op ON operation_stories(operation_id, story_index);
CREATE INDEX IF NOT EXISTS idx_activities_entity ON activities(entity_id, type);
CREATE INDEX IF NOT EXISTS idx_sessions_op ON agent_sessions(operation_id, state);
"""


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


# ── Column codecs ────────────────────────────────────────────────────────────


def _dt_to_str(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _str_to_dt(s: str | None) -> datetime | None:
    if not s:
        return None
    return datetime.fromisoformat(s)


def _json_list(raw: str | None) -> list[Any]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return value if isinstance(value, list) else []


def _json_dict(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return value if isinstance(value, dict) else {}


def _to_column(name: str, value: Any) -> Any:
    if name == "loop_payload":
        return encode_loop_payload(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return _dt_to_str(value)
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return value


# Model field → column name, where they differ.
_COLUMN_NAMES = {
    "loop_payload": "loop_config_json",
    "output": "output_json",
}

_WORK_ORDER_FIELDS = frozenset(
    {"title", "goal", "priority", "tags", "state", "workflow_id", "current_stage",
     "blocked_reason", "shipped_at", "updated_at"}
)
_OPERATION_FIELDS = frozenset(
    {"title", "notes", "status", "iteration_count", "loop_payload", "current_story_id",
     "retry_count", "max_retries", "timeout_count", "claimed_by", "claim_expires_at",
     "last_claimed_at", "blocked_reason", "escalation_reason", "escalated_at",
     "assignee_agent_ids", "loop_target_op_id", "updated_at"}
)
_STORY_FIELDS = frozenset(
    {"status", "retry_count", "max_retries", "output", "updated_at"}
)


def _row_to_work_order(row: aiosqlite.Row) -> WorkOrder:
    return WorkOrder(
        id=row["id"],
        title=row["title"],
        goal=row["goal"],
        priority=row["priority"],
        tags=_json_list(row["tags"]),
        state=WorkOrderState(row["state"]),
        workflow_id=row["workflow_id"],
        current_stage=row["current_stage"],
        blocked_reason=row["blocked_reason"],
        shipped_at=_str_to_dt(row["shipped_at"]),
        created_at=_str_to_dt(row["created_at"]),
        updated_at=_str_to_dt(row["updated_at"]),
    )


def _row_to_operation(row: aiosqlite.Row) -> Operation:
    return Operation(
        id=row["id"],
        work_order_id=row["work_order_id"],
        title=row["title"],
        notes=row["notes"],
        status=OperationStatus(row["status"]),
        workflow_id=row["workflow_id"],
        workflow_stage_index=row["workflow_stage_index"],
        iteration_count=row["iteration_count"],
        execution_type=ExecutionType(row["execution_type"]),
        loop_payload=decode_loop_payload(row["loop_config_json"]),
        current_story_id=row["current_story_id"],
        retry_count=row["retry_count"],
        max_retries=row["max_retries"],
        timeout_count=row["timeout_count"],
        claimed_by=row["claimed_by"],
        claim_expires_at=_str_to_dt(row["claim_expires_at"]),
        last_claimed_at=_str_to_dt(row["last_claimed_at"]),
        blocked_reason=row["blocked_reason"],
        escalation_reason=(
            EscalationReason(row["escalation_reason"]) if row["escalation_reason"] else None
        ),
        escalated_at=_str_to_dt(row["escalated_at"]),
        assignee_agent_ids=[str(a) for a in _json_list(row["assignee_agent_ids"])],
        loop_target_op_id=row["loop_target_op_id"],
        created_at=_str_to_dt(row["created_at"]),
        updated_at=_str_to_dt(row["updated_at"]),
    )


def _row_to_story(row: aiosqlite.Row) -> OperationStory:
    output = _json_dict(row["output_json"]) if row["output_json"] else None
    return OperationStory(
        id=row["id"],
        operation_id=row["operation_id"],
        work_order_id=row["work_order_id"],
        story_index=row["story_index"],
        story_key=row["story_key"],
        title=row["title"],
        description=row["description"],
        acceptance_criteria=[str(c) for c in _json_list(row["acceptance_criteria"])],
        status=StoryStatus(row["status"]),
        retry_count=row["retry_count"],
        max_retries=row["max_retries"],
        output=output,
        created_at=_str_to_dt(row["created_at"]),
        updated_at=_str_to_dt(row["updated_at"]),
    )


def _row_to_approval(row: aiosqlite.Row) -> Approval:
    return Approval(
        id=row["id"],
        work_order_id=row["work_order_id"],
        operation_id=row["operation_id"],
        type=ApprovalType(row["type"]),
        question_md=row["question_md"],
        status=ApprovalStatus(row["status"]),
        created_at=_str_to_dt(row["created_at"]),
    )


def _row_to_activity(row: aiosqlite.Row) -> Activity:
    return Activity(
        id=row["id"],
        type=ActivityType(row["type"]),
        actor=row["actor"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        summary=row["summary"],
        payload=_json_dict(row["payload_json"]),
        created_at=_str_to_dt(row["created_at"]),
    )


def _row_to_agent(row: aiosqlite.Row) -> Agent:
    return Agent(
        id=row["id"],
        name=row["name"],
        display_name=row["display_name"],
        role=row["role"],
        station=row["station"],
        status=AgentStatus(row["status"]),
        session_key=row["session_key"],
        capabilities=[str(c) for c in _json_list(row["capabilities"])],
        wip_limit=row["wip_limit"],
    )


# ── Store ────────────────────────────────────────────────────────────────────


class EngineStore:
    """SQLite-backed persistence with explicit transactions."""

    def __init__(self, db_path: str, busy_timeout_ms: int = 5000):
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._tx_task: asyncio.Task | None = None

    async def initialize(self) -> None:
        """Open the database and create tables."""
        self._db = await aiosqlite.connect(self.db_path, isolation_level=None)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._db.executescript(SCHEMA)
        logger.info("Engine store initialized: %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Store not initialized — call initialize() first")
        return self._db

    # ── Transactions ─────────────────────────────────────────────────────

    def in_transaction(self) -> bool:
        return self._tx_task is not None and self._tx_task is asyncio.current_task()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[EngineStore]:
        """Run the block as one IMMEDIATE transaction; roll back on any exception."""
        if self.in_transaction():
            raise RuntimeError("Nested transactions are not supported")
        async with self._lock:
            self._tx_task = asyncio.current_task()
            try:
                await self.db.execute("BEGIN IMMEDIATE")
                try:
                    yield self
                except BaseException:
                    await self.db.execute("ROLLBACK")
                    raise
                await self.db.execute("COMMIT")
            finally:
                self._tx_task = None

    @asynccontextmanager
    async def _guard(self) -> AsyncIterator[None]:
        if self.in_transaction():
            yield
            return
        async with self._lock:
            yield

    async def _execute(self, sql: str, params: tuple | list = ()) -> aiosqlite.Cursor:
        async with self._guard():
            return await self.db.execute(sql, params)

    async def _fetchone(self, sql: str, params: tuple | list = ()) -> aiosqlite.Row | None:
        async with self._guard():
            cursor = await self.db.execute(sql, params)
            return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: tuple | list = ()) -> list[aiosqlite.Row]:
        async with self._guard():
            cursor = await self.db.execute(sql, params)
            return list(await cursor.fetchall())

    async def _update(
        self, table: str, allowed: frozenset[str], row_id: str, fields: dict[str, Any]
    ) -> int:
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Cannot update {table} fields: {sorted(unknown)}")
        fields.setdefault("updated_at", utcnow())
        columns = [_COLUMN_NAMES.get(name, name) for name in fields]
        values = [_to_column(name, value) for name, value in fields.items()]
        assignments = ", ".join(f"{col} = ?" for col in columns)
        cursor = await self._execute(
            f"UPDATE {table} SET {assignments} WHERE id = ?", (*values, row_id)
        )
        return cursor.rowcount

    # ── Work Orders ──────────────────────────────────────────────────────

    async def create_work_order(self, wo: WorkOrder) -> WorkOrder:
        await self._execute(
            """
            INSERT INTO work_orders (
                id, title, goal, priority, tags, state, workflow_id, current_stage,
                blocked_reason, shipped_at, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                wo.id,
                wo.title,
                wo.goal,
                wo.priority,
                json.dumps(wo.tags),
                wo.state.value,
                wo.workflow_id,
                wo.current_stage,
                wo.blocked_reason,
                _dt_to_str(wo.shipped_at),
                _dt_to_str(wo.created_at),
                _dt_to_str(wo.updated_at),
            ),
        )
        return wo

    async def get_work_order(self, work_order_id: str) -> WorkOrder | None:
        row = await self._fetchone("SELECT * FROM work_orders WHERE id = ?", (work_order_id,))
        return _row_to_work_order(row) if row else None

    async def update_work_order(self, work_order_id: str, **fields: Any) -> int:
        return await self._update("work_orders", _WORK_ORDER_FIELDS, work_order_id, fields)

    async def list_planned_work_orders(self, limit: int) -> list[WorkOrder]:
        """Planned work orders, oldest first."""
        rows = await self._fetchall(
            "SELECT * FROM work_orders WHERE state = ? ORDER BY created_at ASC, id ASC LIMIT ?",
            (WorkOrderState.PLANNED.value, limit),
        )
        return [_row_to_work_order(r) for r in rows]

    # ── Operations ───────────────────────────────────────────────────────

    async def create_operation(self, op: Operation) -> Operation:
        await self._execute(
            """
            INSERT INTO operations (
                id, work_order_id, title, notes, status, workflow_id, workflow_stage_index,
                iteration_count, execution_type, loop_config_json, current_story_id,
                retry_count, max_retries, timeout_count, claimed_by, claim_expires_at,
                last_claimed_at, blocked_reason, escalation_reason, escalated_at,
                assignee_agent_ids, loop_target_op_id, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                op.id,
                op.work_order_id,
                op.title,
                op.notes,
                op.status.value,
                op.workflow_id,
                op.workflow_stage_index,
                op.iteration_count,
                op.execution_type.value,
                encode_loop_payload(op.loop_payload),
                op.current_story_id,
                op.retry_count,
                op.max_retries,
                op.timeout_count,
                op.claimed_by,
                _dt_to_str(op.claim_expires_at),
                _dt_to_str(op.last_claimed_at),
                op.blocked_reason,
                op.escalation_reason.value if op.escalation_reason else None,
                _dt_to_str(op.escalated_at),
                json.dumps(op.assignee_agent_ids),
                op.loop_target_op_id,
                _dt_to_str(op.created_at),
                _dt_to_str(op.updated_at),
            ),
        )
        return op

    async def get_operation(self, operation_id: str) -> Operation | None:
        row = await self._fetchone("SELECT * FROM operations WHERE id = ?", (operation_id,))
        return _row_to_operation(row) if row else None

    async def update_operation(self, operation_id: str, **fields: Any) -> int:
        return await self._update("operations", _OPERATION_FIELDS, operation_id, fields)

    async def list_operations(self, work_order_id: str) -> list[Operation]:
        rows = await self._fetchall(
            "SELECT * FROM operations WHERE work_order_id = ? ORDER BY created_at ASC, rowid ASC",
            (work_order_id,),
        )
        return [_row_to_operation(r) for r in rows]

    async def count_open_operations(self, work_order_id: str) -> int:
        placeholders = ", ".join("?" for _ in OPEN_OPERATION_STATUSES)
        row = await self._fetchone(
            f"SELECT COUNT(*) AS n FROM operations WHERE work_order_id = ? "
            f"AND status IN ({placeholders})",
            (work_order_id, *(s.value for s in OPEN_OPERATION_STATUSES)),
        )
        return row["n"] if row else 0

    async def block_open_operations(self, work_order_id: str, reason: str) -> int:
        """Block every open operation of a work order; returns how many were blocked."""
        placeholders = ", ".join("?" for _ in OPEN_OPERATION_STATUSES)
        cursor = await self._execute(
            f"""
            UPDATE operations
            SET status = ?, blocked_reason = ?, claimed_by = NULL, claim_expires_at = NULL,
                updated_at = ?
            WHERE work_order_id = ? AND status IN ({placeholders})
            """,
            (
                OperationStatus.BLOCKED.value,
                reason,
                _dt_to_str(utcnow()),
                work_order_id,
                *(s.value for s in OPEN_OPERATION_STATUSES),
            ),
        )
        return cursor.rowcount

    async def latest_resumable_operation(self, work_order_id: str) -> Operation | None:
        """Most recently updated blocked/todo/rework operation of a work order."""
        row = await self._fetchone(
            """
            SELECT * FROM operations
            WHERE work_order_id = ? AND status IN (?, ?, ?)
            ORDER BY updated_at DESC, rowid DESC LIMIT 1
            """,
            (
                work_order_id,
                OperationStatus.BLOCKED.value,
                OperationStatus.TODO.value,
                OperationStatus.REWORK.value,
            ),
        )
        return _row_to_operation(row) if row else None

    async def try_claim_operation(
        self, operation_id: str, owner: str, ttl: timedelta, now: datetime | None = None
    ) -> bool:
        """Atomically move a claimable operation to in_progress under ``owner``.

        Succeeds only if the status is claimable and the current claim is
        absent or expired. Exactly one of several concurrent callers wins.
        """
        now = now or utcnow()
        now_s = _dt_to_str(now)
        placeholders = ", ".join("?" for _ in CLAIMABLE_OPERATION_STATUSES)
        cursor = await self._execute(
            f"""
            UPDATE operations
            SET status = ?, claimed_by = ?, claim_expires_at = ?, last_claimed_at = ?,
                updated_at = ?
            WHERE id = ?
              AND status IN ({placeholders})
              AND (claim_expires_at IS NULL OR claim_expires_at < ?)
            """,
            (
                OperationStatus.IN_PROGRESS.value,
                owner,
                _dt_to_str(now + ttl),
                now_s,
                now_s,
                operation_id,
                *(s.value for s in CLAIMABLE_OPERATION_STATUSES),
                now_s,
            ),
        )
        return cursor.rowcount > 0

    async def list_stale_candidates(
        self, now: datetime, stale_before: datetime, limit: int
    ) -> list[Operation]:
        """in_progress operations with an expired claim or no update since ``stale_before``."""
        rows = await self._fetchall(
            """
            SELECT * FROM operations
            WHERE status = ?
              AND ((claim_expires_at IS NOT NULL AND claim_expires_at < ?) OR updated_at < ?)
            ORDER BY updated_at ASC, rowid ASC
            LIMIT ?
            """,
            (
                OperationStatus.IN_PROGRESS.value,
                _dt_to_str(now),
                _dt_to_str(stale_before),
                limit,
            ),
        )
        return [_row_to_operation(r) for r in rows]

    # ── Stories ──────────────────────────────────────────────────────────

    async def create_stories(self, stories: list[OperationStory]) -> None:
        for story in stories:
            await self._execute(
                """
                INSERT INTO operation_stories (
                    id, operation_id, work_order_id, story_index, story_key, title,
                    description, acceptance_criteria, status, retry_count, max_retries,
                    output_json, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    story.id,
                    story.operation_id,
                    story.work_order_id,
                    story.story_index,
                    story.story_key,
                    story.title,
                    story.description,
                    json.dumps(story.acceptance_criteria),
                    story.status.value,
                    story.retry_count,
                    story.max_retries,
                    json.dumps(story.output) if story.output is not None else None,
                    _dt_to_str(story.created_at),
                    _dt_to_str(story.updated_at),
                ),
            )

    async def delete_stories(self, operation_id: str) -> int:
        cursor = await self._execute(
            "DELETE FROM operation_stories WHERE operation_id = ?", (operation_id,)
        )
        return cursor.rowcount

    async def get_story(self, story_id: str) -> OperationStory | None:
        row = await self._fetchone("SELECT * FROM operation_stories WHERE id = ?", (story_id,))
        return _row_to_story(row) if row else None

    async def list_stories(self, operation_id: str) -> list[OperationStory]:
        rows = await self._fetchall(
            "SELECT * FROM operation_stories WHERE operation_id = ? ORDER BY story_index ASC",
            (operation_id,),
        )
        return [_row_to_story(r) for r in rows]

    async def next_pending_story(self, operation_id: str) -> OperationStory | None:
        row = await self._fetchone(
            """
            SELECT * FROM operation_stories
            WHERE operation_id = ? AND status = ?
            ORDER BY story_index ASC LIMIT 1
            """,
            (operation_id, StoryStatus.PENDING.value),
        )
        return _row_to_story(row) if row else None

    async def update_story(self, story_id: str, **fields: Any) -> int:
        return await self._update("operation_stories", _STORY_FIELDS, story_id, fields)

    # ── Approvals ────────────────────────────────────────────────────────

    async def create_approval(self, approval: Approval) -> Approval:
        await self._execute(
            """
            INSERT INTO approvals (id, work_order_id, operation_id, type, question_md, status,
                                   created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                approval.id,
                approval.work_order_id,
                approval.operation_id,
                approval.type.value,
                approval.question_md,
                approval.status.value,
                _dt_to_str(approval.created_at),
            ),
        )
        return approval

    async def list_approvals(self, work_order_id: str) -> list[Approval]:
        rows = await self._fetchall(
            "SELECT * FROM approvals WHERE work_order_id = ? ORDER BY created_at ASC, rowid ASC",
            (work_order_id,),
        )
        return [_row_to_approval(r) for r in rows]

    # ── Activities ───────────────────────────────────────────────────────

    async def record_activity(
        self,
        type: ActivityType,
        entity_type: str,
        entity_id: str,
        summary: str,
        payload: dict[str, Any] | None = None,
        actor: str = "system:manager",
    ) -> None:
        await self._execute(
            """
            INSERT INTO activities (type, actor, entity_type, entity_id, summary, payload_json,
                                    created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                type.value,
                actor,
                entity_type,
                entity_id,
                summary,
                json.dumps(payload or {}, default=str),
                _dt_to_str(utcnow()),
            ),
        )

    async def list_activities(
        self, entity_id: str | None = None, type: ActivityType | None = None
    ) -> list[Activity]:
        clauses, params = [], []
        if entity_id is not None:
            clauses.append("entity_id = ?")
            params.append(entity_id)
        if type is not None:
            clauses.append("type = ?")
            params.append(type.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._fetchall(f"SELECT * FROM activities {where} ORDER BY id ASC", params)
        return [_row_to_activity(r) for r in rows]

    async def latest_activity(self, entity_id: str, type: ActivityType) -> Activity | None:
        row = await self._fetchone(
            "SELECT * FROM activities WHERE entity_id = ? AND type = ? ORDER BY id DESC LIMIT 1",
            (entity_id, type.value),
        )
        return _row_to_activity(row) if row else None

    async def count_activities(self) -> int:
        row = await self._fetchone("SELECT COUNT(*) AS n FROM activities")
        return row["n"] if row else 0

    # ── Receipts & Artifacts ─────────────────────────────────────────────

    async def create_receipt(self, receipt: Receipt) -> Receipt:
        await self._execute(
            """
            INSERT INTO receipts (id, work_order_id, operation_id, kind, command_name,
                                  command_args_json, exit_code, parsed_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                receipt.id,
                receipt.work_order_id,
                receipt.operation_id,
                receipt.kind,
                receipt.command_name,
                json.dumps(receipt.command_args, default=str),
                receipt.exit_code,
                json.dumps(receipt.parsed, default=str),
                _dt_to_str(receipt.created_at),
            ),
        )
        return receipt

    async def list_receipts(self, operation_id: str) -> list[Receipt]:
        rows = await self._fetchall(
            "SELECT * FROM receipts WHERE operation_id = ? ORDER BY created_at ASC, rowid ASC",
            (operation_id,),
        )
        return [
            Receipt(
                id=r["id"],
                work_order_id=r["work_order_id"],
                operation_id=r["operation_id"],
                kind=r["kind"],
                command_name=r["command_name"],
                command_args=_json_dict(r["command_args_json"]),
                exit_code=r["exit_code"],
                parsed=_json_dict(r["parsed_json"]),
                created_at=_str_to_dt(r["created_at"]),
            )
            for r in rows
        ]

    async def create_artifact(self, artifact: Artifact) -> Artifact:
        await self._execute(
            """
            INSERT INTO artifacts (id, work_order_id, operation_id, type, title, path_or_url,
                                   created_by, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                artifact.id,
                artifact.work_order_id,
                artifact.operation_id,
                artifact.type.value,
                artifact.title,
                artifact.path_or_url,
                artifact.created_by,
                _dt_to_str(artifact.created_at),
            ),
        )
        return artifact

    async def list_artifacts(self, work_order_id: str) -> list[Artifact]:
        rows = await self._fetchall(
            "SELECT * FROM artifacts WHERE work_order_id = ? ORDER BY created_at ASC, rowid ASC",
            (work_order_id,),
        )
        return [
            Artifact(
                id=r["id"],
                work_order_id=r["work_order_id"],
                operation_id=r["operation_id"],
                type=ArtifactType(r["type"]),
                title=r["title"],
                path_or_url=r["path_or_url"],
                created_by=r["created_by"],
                created_at=_str_to_dt(r["created_at"]),
            )
            for r in rows
        ]

    # ── Completion Tokens ────────────────────────────────────────────────

    async def has_completion_token(self, token: str) -> bool:
        row = await self._fetchone(
            "SELECT 1 FROM operation_completion_tokens WHERE token = ?", (token,)
        )
        return row is not None

    async def insert_completion_token(self, token: str, operation_id: str) -> bool:
        """Record a completion token; False if it was already recorded."""
        try:
            await self._execute(
                "INSERT INTO operation_completion_tokens (token, operation_id, created_at) "
                "VALUES (?, ?, ?)",
                (token, operation_id, _dt_to_str(utcnow())),
            )
        except aiosqlite.IntegrityError:
            return False
        return True

    # ── Agents & Sessions ────────────────────────────────────────────────

    async def upsert_agent(self, agent: Agent) -> Agent:
        await self._execute(
            """
            INSERT INTO agents (id, name, display_name, role, station, status, session_key,
                                capabilities, wip_limit)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name, display_name = excluded.display_name,
                role = excluded.role, station = excluded.station, status = excluded.status,
                session_key = excluded.session_key, capabilities = excluded.capabilities,
                wip_limit = excluded.wip_limit
            """,
            (
                agent.id,
                agent.name,
                agent.display_name,
                agent.role,
                agent.station,
                agent.status.value,
                agent.session_key,
                json.dumps(agent.capabilities),
                agent.wip_limit,
            ),
        )
        return agent

    async def get_agent(self, agent_id: str) -> Agent | None:
        row = await self._fetchone("SELECT * FROM agents WHERE id = ?", (agent_id,))
        return _row_to_agent(row) if row else None

    async def list_agents(self) -> list[Agent]:
        rows = await self._fetchall("SELECT * FROM agents ORDER BY name ASC")
        return [_row_to_agent(r) for r in rows]

    async def count_agent_open_operations(self, agent_id: str) -> int:
        """Open operations that list ``agent_id`` among their assignees."""
        placeholders = ", ".join("?" for _ in OPEN_OPERATION_STATUSES)
        row = await self._fetchone(
            f"""
            SELECT COUNT(*) AS n FROM operations
            WHERE status IN ({placeholders}) AND instr(assignee_agent_ids, ?) > 0
            """,
            (*(s.value for s in OPEN_OPERATION_STATUSES), json.dumps(agent_id)),
        )
        return row["n"] if row else 0

    async def upsert_agent_session(self, session: AgentSession) -> None:
        await self._execute(
            """
            INSERT INTO agent_sessions (session_key, agent_id, operation_id, work_order_id,
                                        state, last_seen_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(session_key) DO UPDATE SET
                agent_id = excluded.agent_id, operation_id = excluded.operation_id,
                work_order_id = excluded.work_order_id, state = excluded.state,
                last_seen_at = excluded.last_seen_at
            """,
            (
                session.session_key,
                session.agent_id,
                session.operation_id,
                session.work_order_id,
                session.state,
                _dt_to_str(session.last_seen_at),
            ),
        )

    async def touch_agent_session(
        self, session_key: str, state: str = "active", seen_at: datetime | None = None
    ) -> int:
        """Heartbeat: update a session's state and last-seen time."""
        cursor = await self._execute(
            "UPDATE agent_sessions SET state = ?, last_seen_at = ? WHERE session_key = ?",
            (state, _dt_to_str(seen_at or utcnow()), session_key),
        )
        return cursor.rowcount

    async def has_active_session(self, operation_id: str, seen_since: datetime) -> bool:
        row = await self._fetchone(
            """
            SELECT 1 FROM agent_sessions
            WHERE operation_id = ? AND state = 'active' AND last_seen_at >= ?
            LIMIT 1
            """,
            (operation_id, _dt_to_str(seen_since)),
        )
        return row is not None

    # ── Leases ───────────────────────────────────────────────────────────

    async def try_acquire_lease(
        self, lease_key: str, owner_id: str, ttl: timedelta, now: datetime | None = None
    ) -> bool:
        """Take ``lease_key`` if it is free or expired. Never waits for the holder."""
        now = now or utcnow()
        cursor = await self._execute(
            """
            INSERT INTO engine_leases (lease_key, owner_id, expires_at) VALUES (?, ?, ?)
            ON CONFLICT(lease_key) DO UPDATE SET
                owner_id = excluded.owner_id, expires_at = excluded.expires_at
            WHERE engine_leases.expires_at < ?
            """,
            (lease_key, owner_id, _dt_to_str(now + ttl), _dt_to_str(now)),
        )
        return cursor.rowcount > 0

    async def release_lease(self, lease_key: str, owner_id: str) -> None:
        await self._execute(
            "DELETE FROM engine_leases WHERE lease_key = ? AND owner_id = ?",
            (lease_key, owner_id),
        )
