"""Core data models for Stagehand.

Domain rows (WorkOrder, Operation, OperationStory, Approval, ...) plus the
result models returned by the engine's public surface.
"""

from __future__ import annotations

import enum
import json
import logging
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from stagehand.workflow.models import StageLoopConfig

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Status Enums ─────────────────────────────────────────────────────────────


class WorkOrderState(str, enum.Enum):
    PLANNED = "planned"
    ACTIVE = "active"
    BLOCKED = "blocked"
    SHIPPED = "shipped"


class OperationStatus(str, enum.Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    REWORK = "rework"
    DONE = "done"
    BLOCKED = "blocked"


# An operation in one of these statuses still belongs to the work order's live path.
OPEN_OPERATION_STATUSES: tuple[OperationStatus, ...] = (
    OperationStatus.TODO,
    OperationStatus.IN_PROGRESS,
    OperationStatus.REVIEW,
    OperationStatus.REWORK,
)

# Statuses from which try_claim_operation may move an operation to in_progress.
CLAIMABLE_OPERATION_STATUSES: tuple[OperationStatus, ...] = (
    OperationStatus.TODO,
    OperationStatus.REWORK,
)


class ExecutionType(str, enum.Enum):
    SINGLE = "single"
    LOOP = "loop"


class StoryStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class ApprovalType(str, enum.Enum):
    RISKY_ACTION = "risky_action"
    SCOPE_CHANGE = "scope_change"


class ApprovalStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class EscalationReason(str, enum.Enum):
    """Why the engine stopped and asked a human.

    Closed set: any other value is a programming error, not a data condition.
    """

    SECURITY_VETO = "security_veto"
    ITERATION_CAP_EXCEEDED = "iteration_cap_exceeded"
    STORY_RETRY_EXHAUSTED = "story_retry_exhausted"
    STALE_TIMEOUT_EXCEEDED = "stale_timeout_exceeded"

    @property
    def approval_type(self) -> ApprovalType:
        if self is EscalationReason.SECURITY_VETO:
            return ApprovalType.RISKY_ACTION
        return ApprovalType.SCOPE_CHANGE


SECURITY_VETO_MARKER = EscalationReason.SECURITY_VETO.value


def is_security_veto(reason: str | None) -> bool:
    """True if a blocked reason marks the irrecoverable veto state."""
    return bool(reason) and SECURITY_VETO_MARKER in reason.lower()


class StageResultStatus(str, enum.Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    VETOED = "vetoed"
    COMPLETED = "completed"


class CompletionCode(str, enum.Enum):
    STALE_IGNORED = "COMPLETION_STALE_IGNORED"
    INVALID_STATE = "COMPLETION_INVALID_STATE"


# ── Work Orders & Operations ─────────────────────────────────────────────────


class WorkOrder(BaseModel):
    """Top-level unit of goal-directed work."""

    id: str
    title: str
    goal: str = ""
    priority: str = "P2"
    tags: list[str] = Field(default_factory=list)
    state: WorkOrderState = WorkOrderState.PLANNED
    workflow_id: str | None = None
    current_stage: int = 0
    blocked_reason: str | None = None
    shipped_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_vetoed(self) -> bool:
        return self.state == WorkOrderState.BLOCKED and is_security_veto(self.blocked_reason)


class StoryVerifyLink(BaseModel):
    """Loop payload of a synthetic verify operation, pointing at its parent loop op."""

    kind: Literal["story_verify"] = "story_verify"
    parent_operation_id: str = Field(alias="parentOperationId")
    story_id: str = Field(alias="storyId")
    loop_stage_index: int = Field(alias="loopStageIndex")

    model_config = {"populate_by_name": True}

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


LoopPayload = StageLoopConfig | StoryVerifyLink


def decode_loop_payload(raw: str | None) -> LoopPayload | None:
    """Decode an operation's loop_config_json column.

    Malformed or unrecognized JSON decodes to None.
    """
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Ignoring malformed loop payload: %.80s", raw)
        return None
    if not isinstance(data, dict):
        return None
    try:
        if data.get("kind") == "story_verify":
            return StoryVerifyLink(**data)
        return StageLoopConfig(**data)
    except ValidationError:
        logger.warning("Ignoring invalid loop payload: %.80s", raw)
        return None


def encode_loop_payload(payload: LoopPayload | None) -> str | None:
    if payload is None:
        return None
    return json.dumps(payload.to_payload())


class Operation(BaseModel):
    """One dispatchable attempt at one stage of one work order."""

    id: str
    work_order_id: str
    title: str
    notes: str | None = None
    status: OperationStatus = OperationStatus.TODO
    workflow_id: str
    workflow_stage_index: int
    iteration_count: int = 0
    execution_type: ExecutionType = ExecutionType.SINGLE
    loop_payload: StageLoopConfig | StoryVerifyLink | None = None
    current_story_id: str | None = None
    retry_count: int = 0
    max_retries: int = 2
    timeout_count: int = 0
    claimed_by: str | None = None
    claim_expires_at: datetime | None = None
    last_claimed_at: datetime | None = None
    blocked_reason: str | None = None
    escalation_reason: EscalationReason | None = None
    escalated_at: datetime | None = None
    assignee_agent_ids: list[str] = Field(default_factory=list)
    loop_target_op_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def verify_link(self) -> StoryVerifyLink | None:
        return self.loop_payload if isinstance(self.loop_payload, StoryVerifyLink) else None

    @property
    def loop_config(self) -> StageLoopConfig | None:
        return self.loop_payload if isinstance(self.loop_payload, StageLoopConfig) else None


class OperationStory(BaseModel):
    """One unit of work inside a loop operation."""

    id: str
    operation_id: str
    work_order_id: str
    story_index: int
    story_key: str
    title: str
    description: str = ""
    acceptance_criteria: list[str] = Field(default_factory=list)
    status: StoryStatus = StoryStatus.PENDING
    retry_count: int = 0
    max_retries: int = 2
    output: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Approval(BaseModel):
    id: str
    work_order_id: str
    operation_id: str | None = None
    type: ApprovalType
    question_md: str
    status: ApprovalStatus = ApprovalStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)


class Receipt(BaseModel):
    """Record of one processed agent run."""

    id: str
    work_order_id: str
    operation_id: str
    kind: str = "agent_run"
    command_name: str
    command_args: dict[str, Any] = Field(default_factory=dict)
    exit_code: int
    parsed: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class ArtifactType(str, enum.Enum):
    PR = "pr"
    DOC = "doc"
    SCREENSHOT = "screenshot"
    LINK = "link"
    FILE = "file"


class Artifact(BaseModel):
    id: str
    work_order_id: str
    operation_id: str
    type: ArtifactType
    title: str
    path_or_url: str
    created_by: str
    created_at: datetime = Field(default_factory=utcnow)


# ── Agents ───────────────────────────────────────────────────────────────────


class AgentStatus(str, enum.Enum):
    IDLE = "idle"
    ACTIVE = "active"
    BLOCKED = "blocked"
    ERROR = "error"


class Agent(BaseModel):
    """A registered worker that stages can be dispatched to."""

    id: str
    name: str
    display_name: str = ""
    role: str
    station: str | None = None
    status: AgentStatus = AgentStatus.IDLE
    session_key: str | None = None
    capabilities: list[str] = Field(default_factory=list)
    wip_limit: int = 2


class AgentSession(BaseModel):
    session_key: str
    agent_id: str | None = None
    operation_id: str | None = None
    work_order_id: str | None = None
    state: str = "active"
    last_seen_at: datetime = Field(default_factory=utcnow)


# ── Stage Results ────────────────────────────────────────────────────────────


class StageResult(BaseModel):
    """Outcome an agent reports for one operation."""

    status: StageResultStatus
    output: Any = None
    feedback: str | None = None
    artifacts: list[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status in (StageResultStatus.APPROVED, StageResultStatus.COMPLETED)


# ── Engine Results ───────────────────────────────────────────────────────────


class StartResult(BaseModel):
    work_order_id: str
    operation_id: str
    workflow_id: str
    stage_index: int
    agent_id: str
    agent_name: str
    session_key: str | None = None


class ResumeResult(StartResult):
    restarted: bool = False


class CompletionResult(BaseModel):
    duplicate: bool = False
    noop: bool = False
    code: CompletionCode | None = None


class WorkOrderOutcome(BaseModel):
    work_order_id: str
    reason: str


class TickResult(BaseModel):
    scanned: int = 0
    started: int = 0
    skipped: int = 0
    stale_recovered: int = 0
    failures: int = 0
    overlap_prevented: bool = False
    dry_run: bool = False
    started_work_orders: list[str] = Field(default_factory=list)
    skipped_work_orders: list[WorkOrderOutcome] = Field(default_factory=list)
    failed_work_orders: list[WorkOrderOutcome] = Field(default_factory=list)


class StaleRecoveryResult(BaseModel):
    scanned: int = 0
    recovered: int = 0
    escalated: int = 0
    failures: int = 0
    skipped_active: int = 0


class DispatchResult(BaseModel):
    dispatched: bool
    operation_id: str
    work_order_id: str = ""
    workflow_id: str = ""
    stage_index: int = 0
    agent_id: str | None = None
    agent_name: str | None = None
    session_key: str | None = None
    error: str | None = None
