"""Escalation — stop a run and ask a human to decide.

Every terminal failure funnels through ``escalate_operation``: the operation
and its work order go to ``blocked``, an Approval carrying a markdown brief is
created, and an ``escalation.<reason>`` activity is written. All of it runs
inside the caller's transaction.

``CeoNotifier`` delivers the brief afterwards, outside any transaction. It is
best-effort: a failed send is recorded as an activity and never raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from stagehand.activity import ActivityType
from stagehand.models import Approval, EscalationReason, OperationStatus, WorkOrderState, utcnow
from stagehand.store import EngineStore, new_id

if TYPE_CHECKING:
    from stagehand.config import EngineConfig
    from stagehand.gateway import AgentGateway

logger = logging.getLogger(__name__)


_SUMMARIES = {
    EscalationReason.SECURITY_VETO: "Security stage vetoed the current change.",
    EscalationReason.STORY_RETRY_EXHAUSTED: "Story retries were exhausted during loop execution.",
    EscalationReason.STALE_TIMEOUT_EXCEEDED: "Operation stalled and retry budget was exhausted.",
}


def build_escalation_message(
    *,
    work_order_id: str,
    workflow_id: str,
    stage_label: str,
    stage_index: int,
    total_stages: int,
    iteration_count: int,
    max_iterations: int | None,
    reason: EscalationReason,
    feedback: str | None,
) -> str:
    """Markdown brief attached to the Approval and sent to the CEO session."""
    if reason == EscalationReason.ITERATION_CAP_EXCEEDED:
        summary = (
            f"Review loop exceeded the iteration cap ({max_iterations or 'configured limit'})."
        )
    else:
        summary = _SUMMARIES[reason]

    lines = [
        f"## Escalation: {reason.value}",
        "",
        f"**Work Order:** {work_order_id}",
        f"**Workflow:** {workflow_id} — Stage {stage_index + 1}/{total_stages or '?'}",
        f"**Stage:** {stage_label}",
        f"**Iterations:** {iteration_count}/{max_iterations if max_iterations else 'N/A'}",
        "",
        "### Feedback",
        feedback or "No feedback provided.",
        "",
        "### Manager Summary",
        summary,
        "",
        "Decision required: approve retry/resume, override gate, or cancel.",
    ]
    return "\n".join(lines)


async def escalate_operation(
    store: EngineStore,
    *,
    operation_id: str,
    work_order_id: str,
    workflow_id: str,
    stage_index: int,
    stage_label: str,
    total_stages: int,
    iteration_count: int,
    max_iterations: int | None,
    reason: EscalationReason,
    feedback: str | None,
    blocked_reason: str | None = None,
    actor: str = "system:manager",
) -> str:
    """Block the operation and its work order and open an Approval.

    Must run inside ``store.transaction()``. Returns the escalation message.
    """
    message = build_escalation_message(
        work_order_id=work_order_id,
        workflow_id=workflow_id,
        stage_label=stage_label,
        stage_index=stage_index,
        total_stages=total_stages,
        iteration_count=iteration_count,
        max_iterations=max_iterations,
        reason=reason,
        feedback=feedback,
    )
    blocked = blocked_reason or feedback or reason.value

    await store.update_operation(
        operation_id,
        status=OperationStatus.BLOCKED,
        escalated_at=utcnow(),
        escalation_reason=reason,
        blocked_reason=blocked,
        claimed_by=None,
        claim_expires_at=None,
    )
    await store.update_work_order(
        work_order_id, state=WorkOrderState.BLOCKED, blocked_reason=blocked
    )
    await store.create_approval(
        Approval(
            id=new_id("apr"),
            work_order_id=work_order_id,
            operation_id=operation_id,
            type=reason.approval_type,
            question_md=message,
        )
    )
    await store.record_activity(
        ActivityType.for_escalation(reason),
        "operation",
        operation_id,
        f"Escalated to CEO: {reason.value}",
        {
            "workflowId": workflow_id,
            "stageIndex": stage_index,
            "stageRef": stage_label,
            "feedback": feedback,
        },
        actor=actor,
    )
    logger.warning(
        "Escalated operation %s (work order %s): %s", operation_id, work_order_id, reason.value
    )
    return message


# ── Notification ─────────────────────────────────────────────────────────────


@dataclass
class Notice:
    work_order_id: str
    workflow_id: str
    kind: str  # "escalation" | "completion"
    message: str


class CeoNotifier:
    """Sends escalation and completion notices to the CEO session."""

    def __init__(self, store: EngineStore, gateway: AgentGateway, config: EngineConfig):
        self.store = store
        self.gateway = gateway
        self.config = config

    async def notify(self, notice: Notice) -> bool:
        try:
            await self.gateway.send_to_session(self.config.ceo_session_key, notice.message)
        except Exception as e:
            logger.warning("CEO notification failed for %s: %s", notice.work_order_id, e)
            await self.store.record_activity(
                ActivityType.MANAGER_NOTIFY_CEO_FAILED,
                "work_order",
                notice.work_order_id,
                f"Failed to notify CEO ({notice.kind})",
                {"workflowId": notice.workflow_id, "error": str(e)},
                actor=self.config.actor,
            )
            return False

        await self.store.record_activity(
            ActivityType.MANAGER_NOTIFY_CEO,
            "work_order",
            notice.work_order_id,
            f"Notified CEO: {notice.kind}",
            {"workflowId": notice.workflow_id, "type": notice.kind},
            actor=self.config.actor,
        )
        return True
