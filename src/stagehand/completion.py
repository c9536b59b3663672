"""Completion handling — the stage transition state machine.

``CompletionHandler.run_completion_tx`` processes one reported agent outcome
inside a single store transaction:

1. Insert the completion token (if any). A duplicate rolls everything back.
2. Re-check that the operation is still ``in_progress``.
3. Write a Receipt and one Artifact per reported path.
4. Route to the verify, loop, or single-stage handler.

Handlers never dispatch or notify. They return a ``TransitionOutcome`` naming
the operation to dispatch and the notice to send once the transaction has
committed.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from stagehand.activity import ActivityType
from stagehand.errors import (
    NoAgentAvailableError,
    OperationNotFoundError,
    StageOutOfRangeError,
    WorkflowIntegrityError,
)
from stagehand.escalation import Notice, escalate_operation
from stagehand.models import (
    SECURITY_VETO_MARKER,
    Artifact,
    ArtifactType,
    CompletionCode,
    CompletionResult,
    EscalationReason,
    ExecutionType,
    Operation,
    OperationStatus,
    OperationStory,
    Receipt,
    StageResult,
    StageResultStatus,
    StoryStatus,
    StoryVerifyLink,
    WorkOrderState,
    utcnow,
)
from stagehand.store import new_id
from stagehand.stories import parse_story_list, resolve_loop_max_stories
from stagehand.workflow import StageType, WorkflowConfig, WorkflowStage, next_runnable_stage

if TYPE_CHECKING:
    from stagehand.agents import AgentResolver, ResolvedAgent
    from stagehand.config import EngineConfig
    from stagehand.store import EngineStore
    from stagehand.workflow import WorkflowRegistry

logger = logging.getLogger(__name__)

_PR_URL = re.compile(r"github\.com/.+/pull/\d+", re.IGNORECASE)


def infer_artifact_type(path_or_url: str) -> ArtifactType:
    lowered = path_or_url.lower()
    if _PR_URL.search(lowered):
        return ArtifactType.PR
    if lowered.endswith(".md"):
        return ArtifactType.DOC
    if lowered.endswith((".png", ".jpg", ".jpeg")):
        return ArtifactType.SCREENSHOT
    if lowered.startswith(("http://", "https://")):
        return ArtifactType.LINK
    return ArtifactType.FILE


def new_stage_operation(
    *,
    work_order_id: str,
    workflow: WorkflowConfig,
    stage_index: int,
    agent: ResolvedAgent,
    title: str,
    iteration_count: int,
    max_retries: int,
    notes: str | None = None,
    loop_target_op_id: str | None = None,
) -> Operation:
    """A fresh ``todo`` operation for one stage, pre-assigned to ``agent``."""
    stage = workflow.stages[stage_index]
    return Operation(
        id=new_id("op"),
        work_order_id=work_order_id,
        title=title,
        notes=notes,
        workflow_id=workflow.id,
        workflow_stage_index=stage_index,
        iteration_count=iteration_count,
        execution_type=ExecutionType.LOOP if stage.type == StageType.LOOP else ExecutionType.SINGLE,
        loop_payload=stage.loop,
        max_retries=max_retries,
        assignee_agent_ids=[agent.id],
        loop_target_op_id=loop_target_op_id,
    )


def stage_title(agent: ResolvedAgent, stage_index: int, total: int) -> str:
    return f"{agent.display_name} — Stage {stage_index + 1}/{total}"


@dataclass
class TransitionOutcome:
    work_order_id: str
    workflow_id: str
    dispatch_operation_id: str | None = None
    notice: Notice | None = None
    noop: CompletionResult | None = None


class _Abort(Exception):
    """Roll back the completion transaction and report ``result`` instead."""

    def __init__(self, result: CompletionResult):
        super().__init__(result.code)
        self.result = result


class CompletionHandler:
    def __init__(
        self,
        store: EngineStore,
        registry: WorkflowRegistry,
        resolver: AgentResolver,
        config: EngineConfig,
    ):
        self.store = store
        self.registry = registry
        self.resolver = resolver
        self.config = config

    async def _activity(
        self,
        type: ActivityType,
        entity_type: str,
        entity_id: str,
        summary: str,
        payload: dict[str, Any],
    ) -> None:
        await self.store.record_activity(
            type, entity_type, entity_id, summary, payload, actor=self.config.actor
        )

    async def _require_agent(self, role_ref: str) -> ResolvedAgent:
        agent = await self.resolver.resolve_stage_agent(role_ref)
        if agent is None:
            raise NoAgentAvailableError(role_ref)
        return agent

    # ── Entry Point ──────────────────────────────────────────────────────

    async def run_completion_tx(
        self, operation_id: str, result: StageResult, completion_token: str | None = None
    ) -> TransitionOutcome:
        try:
            async with self.store.transaction():
                if completion_token and not await self.store.insert_completion_token(
                    completion_token, operation_id
                ):
                    raise _Abort(
                        CompletionResult(
                            duplicate=True, noop=True, code=CompletionCode.STALE_IGNORED
                        )
                    )

                op = await self.store.get_operation(operation_id)
                if op is None:
                    raise OperationNotFoundError(operation_id)
                if op.status == OperationStatus.DONE:
                    # Lost a race with another completion
                    raise _Abort(CompletionResult(noop=True, code=CompletionCode.STALE_IGNORED))
                if op.status != OperationStatus.IN_PROGRESS:
                    raise _Abort(CompletionResult(noop=True, code=CompletionCode.INVALID_STATE))

                return await self._transition(op, result)
        except _Abort as abort:
            logger.info("Completion for %s not applied: %s", operation_id, abort.result.code)
            return TransitionOutcome(work_order_id="", workflow_id="", noop=abort.result)

    async def _transition(self, op: Operation, result: StageResult) -> TransitionOutcome:
        workflow = self.registry.require_workflow_config(op.workflow_id)
        if not 0 <= op.workflow_stage_index < len(workflow.stages):
            raise StageOutOfRangeError(workflow.id, op.workflow_stage_index)
        stage = workflow.stages[op.workflow_stage_index]

        await self._write_receipt_and_artifacts(op, workflow.id, stage.ref, result)
        initial_context = await self.load_initial_context(op.work_order_id)

        if op.verify_link is not None:
            return await self._handle_verify(op, op.verify_link, workflow, result, initial_context)
        if op.execution_type == ExecutionType.LOOP or stage.type == StageType.LOOP:
            return await self._handle_loop(op, workflow, stage, result, initial_context)
        return await self._handle_single(op, workflow, stage, result, initial_context)

    # ── Receipts & Context ───────────────────────────────────────────────

    async def _write_receipt_and_artifacts(
        self, op: Operation, workflow_id: str, stage_ref: str, result: StageResult
    ) -> None:
        output_context: dict[str, Any] = {}
        if isinstance(result.output, dict):
            nested = result.output.get("context")
            output_context = nested if isinstance(nested, dict) else result.output

        agent_id = op.assignee_agent_ids[0] if op.assignee_agent_ids else None
        if agent_id is None and isinstance(output_context.get("agentId"), str):
            agent_id = output_context["agentId"]
        agent = await self.store.get_agent(agent_id) if agent_id else None

        reported_name = output_context.get("agentName")
        if agent is not None:
            agent_name = agent.display_name.strip() or agent.name
        elif isinstance(reported_name, str) and reported_name:
            agent_name = reported_name
        else:
            agent_name = agent_id or stage_ref
        runtime_name = (agent.name if agent else None) or agent_id or stage_ref

        story = await self.store.get_story(op.current_story_id) if op.current_story_id else None
        await self.store.create_receipt(
            Receipt(
                id=new_id("rcpt"),
                work_order_id=op.work_order_id,
                operation_id=op.id,
                command_name=f"agent:{runtime_name}",
                command_args={
                    "workflowId": workflow_id,
                    "stageIndex": op.workflow_stage_index,
                    "stageRef": stage_ref,
                    "agentId": agent_id,
                    "agentName": agent_name,
                    "iterationCount": op.iteration_count,
                    "status": result.status.value,
                },
                exit_code=0 if result.success else 1,
                parsed={
                    "status": result.status.value,
                    "output": result.output,
                    "feedback": result.feedback,
                    "artifacts": result.artifacts,
                    "story": (
                        {
                            "id": story.id,
                            "storyIndex": story.story_index,
                            "storyKey": story.story_key,
                            "title": story.title,
                            "status": story.status.value,
                            "retryCount": story.retry_count,
                        }
                        if story
                        else None
                    ),
                },
            )
        )

        for path in result.artifacts:
            if not path:
                continue
            await self.store.create_artifact(
                Artifact(
                    id=new_id("art"),
                    work_order_id=op.work_order_id,
                    operation_id=op.id,
                    type=infer_artifact_type(path),
                    title=path,
                    path_or_url=path,
                    created_by=agent_name,
                )
            )

    async def load_initial_context(self, work_order_id: str) -> dict[str, Any]:
        """Start context recorded on the latest ``workflow.started`` activity."""
        started = await self.store.latest_activity(work_order_id, ActivityType.WORKFLOW_STARTED)
        if started is None:
            return {}
        context = started.payload.get("initialContext")
        return context if isinstance(context, dict) else {}

    # ── Stage Advancement ────────────────────────────────────────────────

    async def create_next_stage_operation(
        self,
        *,
        work_order_id: str,
        workflow: WorkflowConfig,
        from_stage_index: int,
        iteration_count: int,
        initial_context: dict[str, Any],
    ) -> str | None:
        """Create the next runnable stage's operation, or ship the work order.

        Returns the new operation id, or None when the work order shipped.
        """
        next_index, skipped = next_runnable_stage(workflow, from_stage_index + 1, initial_context)
        for index in skipped:
            skipped_stage = workflow.stages[index]
            await self._activity(
                ActivityType.WORKFLOW_STAGE_SKIPPED,
                "work_order",
                work_order_id,
                f"Skipped optional stage: {skipped_stage.ref} ({skipped_stage.condition})",
                {
                    "workflowId": workflow.id,
                    "stageIndex": index,
                    "stageRef": skipped_stage.ref,
                    "condition": skipped_stage.condition,
                },
            )

        if next_index is None:
            await self.store.update_work_order(
                work_order_id,
                state=WorkOrderState.SHIPPED,
                shipped_at=utcnow(),
                blocked_reason=None,
            )
            await self._activity(
                ActivityType.WORK_ORDER_SHIPPED,
                "work_order",
                work_order_id,
                "Work order completed all workflow stages",
                {"workflowId": workflow.id},
            )
            logger.info("Work order %s shipped (workflow %s)", work_order_id, workflow.id)
            return None

        stage = workflow.stages[next_index]
        agent = await self._require_agent(stage.agent)
        op = await self.store.create_operation(
            new_stage_operation(
                work_order_id=work_order_id,
                workflow=workflow,
                stage_index=next_index,
                agent=agent,
                title=stage_title(agent, next_index, len(workflow.stages)),
                iteration_count=iteration_count,
                max_retries=self.config.default_max_retries,
            )
        )
        await self.store.update_work_order(
            work_order_id,
            state=WorkOrderState.ACTIVE,
            blocked_reason=None,
            current_stage=next_index,
        )
        await self._activity(
            ActivityType.WORKFLOW_ADVANCED,
            "operation",
            op.id,
            f"Advanced to stage {next_index + 1}/{len(workflow.stages)} ({stage.ref})",
            {
                "workflowId": workflow.id,
                "fromStageIndex": from_stage_index,
                "toStageIndex": next_index,
                "stageRef": stage.ref,
                "agentId": agent.id,
                "agentName": agent.display_name,
            },
        )
        return op.id

    async def _advance_or_ship(
        self,
        work_order_id: str,
        workflow: WorkflowConfig,
        from_stage_index: int,
        iteration_count: int,
        initial_context: dict[str, Any],
    ) -> TransitionOutcome:
        next_op_id = await self.create_next_stage_operation(
            work_order_id=work_order_id,
            workflow=workflow,
            from_stage_index=from_stage_index,
            iteration_count=iteration_count,
            initial_context=initial_context,
        )
        if next_op_id is None:
            return TransitionOutcome(
                work_order_id=work_order_id,
                workflow_id=workflow.id,
                notice=Notice(
                    work_order_id=work_order_id,
                    workflow_id=workflow.id,
                    kind="completion",
                    message=f"Work Order Complete: {work_order_id}\n\nWorkflow: {workflow.id}",
                ),
            )
        return TransitionOutcome(
            work_order_id=work_order_id, workflow_id=workflow.id, dispatch_operation_id=next_op_id
        )

    async def _escalate(
        self,
        op: Operation,
        workflow: WorkflowConfig,
        *,
        stage_label: str,
        reason: EscalationReason,
        feedback: str | None,
        max_iterations: int | None,
    ) -> TransitionOutcome:
        message = await escalate_operation(
            self.store,
            operation_id=op.id,
            work_order_id=op.work_order_id,
            workflow_id=workflow.id,
            stage_index=op.workflow_stage_index,
            stage_label=stage_label,
            total_stages=len(workflow.stages),
            iteration_count=op.iteration_count,
            max_iterations=max_iterations,
            reason=reason,
            feedback=feedback,
            actor=self.config.actor,
        )
        return TransitionOutcome(
            work_order_id=op.work_order_id,
            workflow_id=workflow.id,
            notice=Notice(op.work_order_id, workflow.id, "escalation", message),
        )

    # ── Single Stages ────────────────────────────────────────────────────

    async def _handle_single(
        self,
        op: Operation,
        workflow: WorkflowConfig,
        stage: WorkflowStage,
        result: StageResult,
        initial_context: dict[str, Any],
    ) -> TransitionOutcome:
        if result.status == StageResultStatus.VETOED and stage.can_veto:
            return await self._handle_veto(op, workflow, stage, result)

        if result.status == StageResultStatus.REJECTED and stage.loop_target:
            return await self._handle_rejection(op, workflow, stage, result)

        success = result.success
        await self.store.update_operation(
            op.id,
            status=OperationStatus.DONE if success else OperationStatus.BLOCKED,
            notes=result.feedback,
            blocked_reason=None if success else (result.feedback or result.status.value),
            claimed_by=None,
            claim_expires_at=None,
        )
        if not success:
            await self.store.update_work_order(
                op.work_order_id,
                state=WorkOrderState.BLOCKED,
                blocked_reason=result.feedback or result.status.value,
            )
            logger.info("Operation %s failed (%s); work order blocked", op.id, result.status.value)
            return TransitionOutcome(work_order_id=op.work_order_id, workflow_id=workflow.id)

        return await self._advance_or_ship(
            op.work_order_id,
            workflow,
            op.workflow_stage_index,
            op.iteration_count,
            initial_context,
        )

    async def _handle_veto(
        self,
        op: Operation,
        workflow: WorkflowConfig,
        stage: WorkflowStage,
        result: StageResult,
    ) -> TransitionOutcome:
        feedback = (result.feedback or "").strip()
        reason = f"{SECURITY_VETO_MARKER}: {feedback}" if feedback else SECURITY_VETO_MARKER

        await escalate_operation(
            self.store,
            operation_id=op.id,
            work_order_id=op.work_order_id,
            workflow_id=workflow.id,
            stage_index=op.workflow_stage_index,
            stage_label=stage.ref,
            total_stages=len(workflow.stages),
            iteration_count=op.iteration_count,
            max_iterations=None,
            reason=EscalationReason.SECURITY_VETO,
            feedback=result.feedback,
            blocked_reason=reason,
            actor=self.config.actor,
        )
        await self.store.update_operation(op.id, notes=result.feedback)
        await self._activity(
            ActivityType.WORKFLOW_SECURITY_VETO,
            "work_order",
            op.work_order_id,
            f"Security veto at stage {stage.ref} permanently blocked the run",
            {
                "workflowId": workflow.id,
                "stageIndex": op.workflow_stage_index,
                "stageRef": stage.ref,
                "operationId": op.id,
                "feedback": result.feedback,
                "final": True,
            },
        )
        return TransitionOutcome(
            work_order_id=op.work_order_id,
            workflow_id=workflow.id,
            notice=Notice(
                work_order_id=op.work_order_id,
                workflow_id=workflow.id,
                kind="escalation",
                message=(
                    f"Security Veto Finalized: {op.work_order_id}\n\n"
                    f"Stage: {stage.ref}\n"
                    f"Reason: {result.feedback or 'Security veto issued'}"
                ),
            ),
        )

    async def _handle_rejection(
        self,
        op: Operation,
        workflow: WorkflowConfig,
        stage: WorkflowStage,
        result: StageResult,
    ) -> TransitionOutcome:
        max_iterations = (
            stage.max_iterations
            if stage.max_iterations is not None
            else self.config.default_max_iterations
        )
        if op.iteration_count >= max_iterations:
            return await self._escalate(
                op,
                workflow,
                stage_label=stage.ref,
                reason=EscalationReason.ITERATION_CAP_EXCEEDED,
                feedback=result.feedback,
                max_iterations=max_iterations,
            )

        target_index = workflow.stage_index(stage.loop_target or "")
        if target_index == -1:
            raise WorkflowIntegrityError(
                f"Loop target {stage.loop_target!r} not found in workflow {workflow.id}"
            )
        target = workflow.stages[target_index]
        agent = await self._require_agent(target.agent)

        next_iteration = op.iteration_count + 1
        rework = await self.store.create_operation(
            new_stage_operation(
                work_order_id=op.work_order_id,
                workflow=workflow,
                stage_index=target_index,
                agent=agent,
                title=f"[Rework] {agent.display_name} (iteration {next_iteration})",
                iteration_count=next_iteration,
                max_retries=self.config.default_max_retries,
                notes=result.feedback,
                loop_target_op_id=op.id,
            )
        )
        await self.store.update_operation(
            op.id,
            status=OperationStatus.REWORK,
            notes=result.feedback,
            blocked_reason=None,
            claimed_by=None,
            claim_expires_at=None,
        )
        await self.store.update_work_order(
            op.work_order_id,
            state=WorkOrderState.ACTIVE,
            blocked_reason=None,
            current_stage=target_index,
        )
        await self._activity(
            ActivityType.WORKFLOW_LOOP,
            "operation",
            rework.id,
            f"Looped back to {target.ref} (iteration {next_iteration})",
            {
                "workflowId": workflow.id,
                "fromStageIndex": op.workflow_stage_index,
                "toStageIndex": target_index,
                "stageRef": target.ref,
                "previousOpId": op.id,
            },
        )
        logger.info(
            "Work order %s looped back to %s (iteration %d)",
            op.work_order_id,
            target.ref,
            next_iteration,
        )
        return TransitionOutcome(
            work_order_id=op.work_order_id, workflow_id=workflow.id, dispatch_operation_id=rework.id
        )

    # ── Loop Stages ──────────────────────────────────────────────────────

    async def _handle_loop(
        self,
        op: Operation,
        workflow: WorkflowConfig,
        stage: WorkflowStage,
        result: StageResult,
        initial_context: dict[str, Any],
    ) -> TransitionOutcome:
        if op.current_story_id is None:
            return await self._initialize_loop(op, workflow, stage, result, initial_context)

        if not result.success:
            return await self._handle_story_failure(
                op,
                workflow,
                stage_ref=stage.ref,
                story_id=op.current_story_id,
                feedback=result.feedback,
                reason_label="story_rejected",
            )

        if stage.loop and stage.loop.verify_each and stage.loop.verify_stage_ref:
            return await self._request_verify(op, workflow, stage, result)

        await self.store.update_story(
            op.current_story_id,
            status=StoryStatus.DONE,
            output={"output": result.output, "feedback": result.feedback},
        )
        await self._activity(
            ActivityType.WORKFLOW_STORY_COMPLETED,
            "operation",
            op.id,
            "Completed loop story",
            {"workflowId": workflow.id, "stageRef": stage.ref, "storyId": op.current_story_id},
        )
        return await self._next_story_or_finish(
            op, workflow, op.workflow_stage_index, initial_context
        )

    async def _initialize_loop(
        self,
        op: Operation,
        workflow: WorkflowConfig,
        stage: WorkflowStage,
        result: StageResult,
        initial_context: dict[str, Any],
    ) -> TransitionOutcome:
        configured = stage.loop.max_stories if stage.loop else None
        if configured is None:
            configured = self.config.default_max_stories
        max_stories = resolve_loop_max_stories(stage.ref, configured, initial_context)
        parsed = parse_story_list(result.output, max_stories)

        if not parsed:
            return await self._escalate(
                op,
                workflow,
                stage_label=stage.ref,
                reason=EscalationReason.STORY_RETRY_EXHAUSTED,
                feedback=result.feedback or "Loop stage did not return STORIES_JSON.",
                max_iterations=op.max_retries,
            )

        await self.store.delete_stories(op.id)
        stories = [
            OperationStory(
                id=new_id("story"),
                operation_id=op.id,
                work_order_id=op.work_order_id,
                story_index=index,
                story_key=story.story_key,
                title=story.title,
                description=story.description,
                acceptance_criteria=story.acceptance_criteria,
                max_retries=op.max_retries,
            )
            for index, story in enumerate(parsed)
        ]
        await self.store.create_stories(stories)

        await self.store.update_operation(
            op.id,
            status=OperationStatus.TODO,
            current_story_id=stories[0].id,
            blocked_reason=None,
            claimed_by=None,
            claim_expires_at=None,
        )
        await self._activity(
            ActivityType.WORKFLOW_LOOP_INITIALIZED,
            "operation",
            op.id,
            f"Initialized {len(stories)} stories",
            {
                "workflowId": workflow.id,
                "stageRef": stage.ref,
                "storyCount": len(stories),
                "maxStoriesConfigured": configured,
                "maxStoriesUsed": max_stories,
            },
        )
        return TransitionOutcome(
            work_order_id=op.work_order_id, workflow_id=workflow.id, dispatch_operation_id=op.id
        )

    async def _request_verify(
        self,
        op: Operation,
        workflow: WorkflowConfig,
        stage: WorkflowStage,
        result: StageResult,
    ) -> TransitionOutcome:
        verify_ref = stage.loop.verify_stage_ref if stage.loop else None
        verify_index = workflow.stage_index(verify_ref or "")
        if verify_index == -1:
            raise WorkflowIntegrityError(
                f"verifyStageRef {verify_ref!r} not found in workflow {workflow.id}"
            )
        verify_stage = workflow.stages[verify_index]
        agent = await self._require_agent(verify_stage.agent)

        link = StoryVerifyLink(
            parent_operation_id=op.id,
            story_id=op.current_story_id,
            loop_stage_index=op.workflow_stage_index,
        )
        verify_op = await self.store.create_operation(
            Operation(
                id=new_id("op"),
                work_order_id=op.work_order_id,
                title=f"{agent.display_name} — Verify story",
                notes=result.feedback,
                workflow_id=workflow.id,
                workflow_stage_index=verify_index,
                iteration_count=op.iteration_count,
                execution_type=ExecutionType.SINGLE,
                loop_payload=link,
                current_story_id=op.current_story_id,
                max_retries=op.max_retries,
                assignee_agent_ids=[agent.id],
            )
        )
        await self.store.update_operation(
            op.id,
            status=OperationStatus.REVIEW,
            blocked_reason=None,
            claimed_by=None,
            claim_expires_at=None,
        )
        await self._activity(
            ActivityType.WORKFLOW_STORY_VERIFY_REQUESTED,
            "operation",
            verify_op.id,
            "Created story verification step",
            {
                "workflowId": workflow.id,
                "parentOperationId": op.id,
                "storyId": op.current_story_id,
                "verifyStageRef": verify_stage.ref,
            },
        )
        return TransitionOutcome(
            work_order_id=op.work_order_id,
            workflow_id=workflow.id,
            dispatch_operation_id=verify_op.id,
        )

    async def _next_story_or_finish(
        self,
        loop_op: Operation,
        workflow: WorkflowConfig,
        loop_stage_index: int,
        initial_context: dict[str, Any],
    ) -> TransitionOutcome:
        next_story = await self.store.next_pending_story(loop_op.id)
        if next_story is not None:
            await self.store.update_operation(
                loop_op.id,
                status=OperationStatus.TODO,
                current_story_id=next_story.id,
                blocked_reason=None,
                claimed_by=None,
                claim_expires_at=None,
            )
            return TransitionOutcome(
                work_order_id=loop_op.work_order_id,
                workflow_id=workflow.id,
                dispatch_operation_id=loop_op.id,
            )

        await self.store.update_operation(
            loop_op.id,
            status=OperationStatus.DONE,
            current_story_id=None,
            blocked_reason=None,
            claimed_by=None,
            claim_expires_at=None,
        )
        return await self._advance_or_ship(
            loop_op.work_order_id,
            workflow,
            loop_stage_index,
            loop_op.iteration_count,
            initial_context,
        )

    async def _handle_story_failure(
        self,
        loop_op: Operation,
        workflow: WorkflowConfig,
        *,
        stage_ref: str,
        story_id: str,
        feedback: str | None,
        reason_label: str,
    ) -> TransitionOutcome:
        """Shared retry policy for rejected story runs and rejected verifications."""
        story = await self.store.get_story(story_id)
        if story is None:
            raise WorkflowIntegrityError(f"Story not found: {story_id}")

        next_retry = story.retry_count + 1
        output = {"verify_feedback": feedback, "reason": reason_label}

        if next_retry > story.max_retries:
            await self.store.update_story(
                story.id, status=StoryStatus.FAILED, retry_count=next_retry, output=output
            )
            return await self._escalate(
                loop_op,
                workflow,
                stage_label=stage_ref,
                reason=EscalationReason.STORY_RETRY_EXHAUSTED,
                feedback=feedback,
                max_iterations=story.max_retries,
            )

        await self.store.update_story(
            story.id, status=StoryStatus.PENDING, retry_count=next_retry, output=output
        )
        await self.store.update_operation(
            loop_op.id,
            status=OperationStatus.TODO,
            current_story_id=story.id,
            blocked_reason=None,
            claimed_by=None,
            claim_expires_at=None,
        )
        await self._activity(
            ActivityType.WORKFLOW_STORY_RETRY,
            "operation",
            loop_op.id,
            f"Retrying story {story.story_index + 1}: {story.title}",
            {
                "workflowId": workflow.id,
                "stageRef": stage_ref,
                "storyId": story.id,
                "storyIndex": story.story_index,
                "retryCount": next_retry,
            },
        )
        return TransitionOutcome(
            work_order_id=loop_op.work_order_id,
            workflow_id=workflow.id,
            dispatch_operation_id=loop_op.id,
        )

    # ── Verify Sub-Operations ────────────────────────────────────────────

    async def _handle_verify(
        self,
        op: Operation,
        link: StoryVerifyLink,
        workflow: WorkflowConfig,
        result: StageResult,
        initial_context: dict[str, Any],
    ) -> TransitionOutcome:
        parent = await self.store.get_operation(link.parent_operation_id)
        if parent is None:
            raise WorkflowIntegrityError(
                f"Parent loop operation not found: {link.parent_operation_id}"
            )
        if 0 <= link.loop_stage_index < len(workflow.stages):
            parent_ref = workflow.stages[link.loop_stage_index].ref
        else:
            parent_ref = f"stage_{link.loop_stage_index}"

        success = result.success
        await self.store.update_operation(
            op.id,
            status=OperationStatus.DONE if success else OperationStatus.BLOCKED,
            notes=result.feedback,
            blocked_reason=None if success else (result.feedback or result.status.value),
            claimed_by=None,
            claim_expires_at=None,
        )

        if not success:
            return await self._handle_story_failure(
                parent,
                workflow,
                stage_ref=parent_ref,
                story_id=link.story_id,
                feedback=result.feedback,
                reason_label="verify_rejected",
            )

        await self.store.update_story(
            link.story_id,
            status=StoryStatus.DONE,
            output={"output": result.output, "verify_feedback": result.feedback},
        )
        await self._activity(
            ActivityType.WORKFLOW_STORY_COMPLETED,
            "operation",
            parent.id,
            "Completed loop story after verification",
            {"workflowId": workflow.id, "stageRef": parent_ref, "storyId": link.story_id},
        )
        return await self._next_story_or_finish(
            parent, workflow, link.loop_stage_index, initial_context
        )
