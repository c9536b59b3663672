"""Dispatcher — claim an operation and hand it to an agent session.

The claim is the only per-operation mutual exclusion: a single conditional
UPDATE in the store. Everything after it (agent resolution, the gateway call)
happens outside any transaction, and its failure is written back as a
separate update that blocks the operation and frees the claim.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from stagehand.activity import ActivityType
from stagehand.models import (
    AgentSession,
    DispatchResult,
    ExecutionType,
    Operation,
    OperationStatus,
    StoryStatus,
)
from stagehand.stories import build_loop_context, format_loop_notes

if TYPE_CHECKING:
    from stagehand.agents import AgentResolver
    from stagehand.config import EngineConfig
    from stagehand.gateway import AgentGateway
    from stagehand.store import EngineStore
    from stagehand.workflow import WorkflowRegistry

logger = logging.getLogger(__name__)


def build_task_text(goal: str, notes: str | None, loop_notes: str = "") -> str:
    """Task text sent to the agent: goal, then operation notes, then story block."""
    parts = [goal or "", ""]
    if notes:
        parts.append("---\nContext:\n" + notes)
    if loop_notes:
        parts.append("---\nStory:\n" + loop_notes)
    return "\n".join(p for p in parts if p)


class Dispatcher:
    def __init__(
        self,
        store: EngineStore,
        registry: WorkflowRegistry,
        resolver: AgentResolver,
        gateway: AgentGateway,
        config: EngineConfig,
    ):
        self.store = store
        self.registry = registry
        self.resolver = resolver
        self.gateway = gateway
        self.config = config

    async def dispatch_operation(self, operation_id: str) -> DispatchResult:
        """Claim ``operation_id`` and send it to an agent.

        Never raises for operational failures; the result carries the error.
        Raises UnknownWorkflowError if the operation names a missing workflow.
        """
        if self.store.in_transaction():
            raise RuntimeError("dispatch_operation must not run inside a transaction")

        op = await self.store.get_operation(operation_id)
        if op is None:
            return DispatchResult(
                dispatched=False, operation_id=operation_id, error="Operation not found"
            )

        result = DispatchResult(
            dispatched=False,
            operation_id=op.id,
            work_order_id=op.work_order_id,
            workflow_id=op.workflow_id,
            stage_index=op.workflow_stage_index,
        )

        workflow = self.registry.require_workflow_config(op.workflow_id)
        if not 0 <= op.workflow_stage_index < len(workflow.stages):
            result.error = f"Workflow stage out of range: {op.workflow_stage_index}"
            return result
        stage = workflow.stages[op.workflow_stage_index]

        claimed = await self.store.try_claim_operation(
            op.id, self.config.engine_id, timedelta(seconds=self.config.claim_ttl_seconds)
        )
        if not claimed:
            logger.debug("Claim lost for operation %s", op.id)
            result.error = "Operation claim failed"
            return result

        agent = await self.resolver.resolve_stage_agent(stage.agent)
        if agent is None:
            reason = f"No available agent for workflow stage: {stage.agent}"
            await self.store.update_operation(
                op.id,
                status=OperationStatus.BLOCKED,
                blocked_reason=reason,
                claimed_by=None,
                claim_expires_at=None,
            )
            logger.warning("Operation %s blocked: %s", op.id, reason)
            result.error = reason
            return result

        result.agent_id = agent.id
        result.agent_name = agent.display_name
        await self.store.update_operation(
            op.id, assignee_agent_ids=[agent.id], blocked_reason=None
        )

        loop_context: dict[str, Any] = {}
        if op.execution_type == ExecutionType.LOOP:
            if op.current_story_id:
                await self.store.update_story(op.current_story_id, status=StoryStatus.RUNNING)
            stories = await self.store.list_stories(op.id)
            loop_context = build_loop_context(stories, op.current_story_id)

        work_order = await self.store.get_work_order(op.work_order_id)
        task = build_task_text(
            work_order.goal if work_order else "", op.notes, format_loop_notes(loop_context)
        )
        context = {
            "workOrderId": op.work_order_id,
            "operationId": op.id,
            "workflowId": op.workflow_id,
            "stageIndex": op.workflow_stage_index,
            "stageRef": stage.ref,
            "stageAgentRef": stage.agent,
            "executionType": op.execution_type.value,
            **loop_context,
        }
        payload = {
            "workflowId": op.workflow_id,
            "stageIndex": op.workflow_stage_index,
            "stageRef": stage.ref,
            "agentId": agent.id,
            "agentName": agent.display_name,
        }

        try:
            receipt = await self.gateway.dispatch_to_agent(
                agent_id=agent.id,
                work_order_id=op.work_order_id,
                operation_id=op.id,
                task=task,
                context=context,
            )
        except Exception as e:
            reason = str(e) or type(e).__name__
            await self._record_failure(op, reason, payload)
            result.error = reason
            return result

        await self.store.upsert_agent_session(
            AgentSession(
                session_key=receipt.session_key,
                agent_id=agent.id,
                operation_id=op.id,
                work_order_id=op.work_order_id,
            )
        )
        await self.store.record_activity(
            ActivityType.WORKFLOW_DISPATCHED,
            "operation",
            op.id,
            f"Dispatched {agent.display_name} for stage {op.workflow_stage_index + 1}",
            {
                **payload,
                "sessionKey": receipt.session_key,
                "sessionId": receipt.session_id,
                "storyId": op.current_story_id,
            },
            actor=self.config.actor,
        )
        logger.info(
            "Dispatched operation %s (stage %s) to %s", op.id, stage.ref, agent.display_name
        )

        result.dispatched = True
        result.session_key = receipt.session_key
        return result

    async def _record_failure(self, op: Operation, reason: str, payload: dict[str, Any]) -> None:
        logger.warning("Dispatch failed for operation %s: %s", op.id, reason)
        await self.store.update_operation(
            op.id,
            status=OperationStatus.BLOCKED,
            blocked_reason=reason,
            claimed_by=None,
            claim_expires_at=None,
        )
        await self.store.record_activity(
            ActivityType.WORKFLOW_DISPATCH_FAILED,
            "operation",
            op.id,
            f"Dispatch failed for {payload['agentName']}",
            {**payload, "error": reason},
            actor=self.config.actor,
        )
