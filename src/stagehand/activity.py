"""Activity trail — append-only audit rows for every engine transition.

Activities are the durable record of what the engine did and why; logs are
operational only. The ``workflow.started`` payload also carries the start
context that later transitions read back (context is not a work order column).

Event Types:
- workflow.* — start, dispatch, advance, loop-back, skips, stories, recovery
- escalation.<reason> — one per escalation reason
- work_order.shipped
- manager.notify_ceo / manager.notify_ceo_failed — notification outcomes
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from stagehand.models import EscalationReason, utcnow


class ActivityType(str, enum.Enum):
    """Types of activity rows written by the engine."""

    # Start / resume
    WORKFLOW_STARTED = "workflow.started"
    WORKFLOW_RESUMED = "workflow.resumed"

    # Dispatch
    WORKFLOW_DISPATCHED = "workflow.dispatched"
    WORKFLOW_DISPATCH_FAILED = "workflow.dispatch_failed"

    # Completion
    WORKFLOW_ADVANCED = "workflow.advanced"
    WORKFLOW_STAGE_SKIPPED = "workflow.stage_skipped"
    WORKFLOW_LOOP = "workflow.loop"
    WORKFLOW_SECURITY_VETO = "workflow.security_veto"
    WORKFLOW_COMPLETION_IGNORED = "workflow.completion_ignored"
    WORKFLOW_COMPLETION_STALE = "workflow.completion_stale"
    WORK_ORDER_SHIPPED = "work_order.shipped"

    # Loop stories
    WORKFLOW_LOOP_INITIALIZED = "workflow.loop_initialized"
    WORKFLOW_STORY_COMPLETED = "workflow.story_completed"
    WORKFLOW_STORY_RETRY = "workflow.story_retry"
    WORKFLOW_STORY_VERIFY_REQUESTED = "workflow.story_verify_requested"

    # Stale recovery
    WORKFLOW_STALE_RECOVERED = "workflow.stale_recovered"
    WORKFLOW_STALE_ESCALATED = "workflow.stale_escalated"
    WORKFLOW_STALE_RECOVERY_FAILED = "workflow.stale_recovery_failed"

    # Escalation (one per EscalationReason)
    ESCALATION_SECURITY_VETO = "escalation.security_veto"
    ESCALATION_ITERATION_CAP_EXCEEDED = "escalation.iteration_cap_exceeded"
    ESCALATION_STORY_RETRY_EXHAUSTED = "escalation.story_retry_exhausted"
    ESCALATION_STALE_TIMEOUT_EXCEEDED = "escalation.stale_timeout_exceeded"

    # Notifications
    MANAGER_NOTIFY_CEO = "manager.notify_ceo"
    MANAGER_NOTIFY_CEO_FAILED = "manager.notify_ceo_failed"

    @classmethod
    def for_escalation(cls, reason: EscalationReason) -> ActivityType:
        return cls(f"escalation.{reason.value}")


class Activity(BaseModel):
    """A single audit row."""

    id: int | None = None
    type: ActivityType
    actor: str = "system:manager"
    entity_type: str
    entity_id: str
    summary: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
