"""Workflow engine — the public surface.

``WorkflowEngine`` composes the store, workflow registry, agent resolver and
gateway into the five entry points callers use:

    start_work_order / resume_work_order   begin or re-enter a run
    advance_on_completion                  apply an agent's reported outcome
    recover_stale_operations               requeue or escalate stuck work
    tick_queue                             start queued work orders

Expected business conditions (stale or duplicate completions, lease not
acquired) come back as result models. Programmer and integrity errors raise
``StagehandError`` subclasses.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from stagehand.activity import ActivityType
from stagehand.completion import CompletionHandler, new_stage_operation, stage_title
from stagehand.config import EngineConfig
from stagehand.dispatcher import Dispatcher
from stagehand.errors import (
    DispatchError,
    NoAgentAvailableError,
    OperationNotFoundError,
    SecurityVetoError,
    WorkflowIntegrityError,
    WorkOrderNotFoundError,
    WorkOrderNotStartableError,
)
from stagehand.escalation import CeoNotifier
from stagehand.leases import RECOVERY_LEASE_KEY, LeaseManager
from stagehand.models import (
    CompletionCode,
    CompletionResult,
    DispatchResult,
    OperationStatus,
    ResumeResult,
    StageResult,
    StaleRecoveryResult,
    StartResult,
    TickResult,
    WorkOrder,
    WorkOrderState,
    is_security_veto,
)
from stagehand.recovery import StaleOperationSweeper
from stagehand.ticker import QueueTicker
from stagehand.workflow import next_runnable_stage

if TYPE_CHECKING:
    from stagehand.agents import AgentResolver
    from stagehand.gateway import AgentGateway
    from stagehand.store import EngineStore
    from stagehand.workflow import WorkflowRegistry

logger = logging.getLogger(__name__)

SUPERSEDED_REASON = "Superseded by workflow restart"


class WorkflowEngine:
    def __init__(
        self,
        store: EngineStore,
        registry: WorkflowRegistry,
        resolver: AgentResolver,
        gateway: AgentGateway,
        config: EngineConfig | None = None,
    ):
        self.store = store
        self.registry = registry
        self.resolver = resolver
        self.gateway = gateway
        self.config = config or EngineConfig()

        self.dispatcher = Dispatcher(store, registry, resolver, gateway, self.config)
        self.completion = CompletionHandler(store, registry, resolver, self.config)
        self.notifier = CeoNotifier(store, gateway, self.config)
        self.leases = LeaseManager(store, self.config.engine_id, self.config.lease_ttl_seconds)
        self.sweeper = StaleOperationSweeper(store, registry, self.dispatcher, self.config)
        self.ticker = QueueTicker(self)

    async def _get_work_order(self, work_order_id: str) -> WorkOrder:
        wo = await self.store.get_work_order(work_order_id)
        if wo is None:
            raise WorkOrderNotFoundError(work_order_id)
        return wo

    async def dispatch_operation(self, operation_id: str) -> DispatchResult:
        return await self.dispatcher.dispatch_operation(operation_id)

    # ── Start / Resume ───────────────────────────────────────────────────

    async def start_work_order(
        self,
        work_order_id: str,
        context: dict[str, Any] | None = None,
        force: bool = False,
        workflow_id_override: str | None = None,
    ) -> StartResult:
        """Select a workflow, create the first runnable stage's operation, dispatch it.

        Raises:
            WorkOrderNotFoundError: Unknown work order.
            SecurityVetoError: The work order was vetoed; it can never restart.
            WorkOrderNotStartableError: Not planned, or already has open
                operations (both waived by ``force``), or no runnable stage.
            UnknownWorkflowError: The selected workflow does not exist.
            NoAgentAvailableError: No agent can take the first stage.
            DispatchError: The first operation was created but could not be
                dispatched. The work order is left blocked.
        """
        wo = await self._get_work_order(work_order_id)
        if is_security_veto(wo.blocked_reason):
            raise SecurityVetoError(work_order_id)
        if not force and wo.state != WorkOrderState.PLANNED:
            raise WorkOrderNotStartableError(work_order_id, f"state is {wo.state.value}")
        if not force and await self.store.count_open_operations(work_order_id) > 0:
            raise WorkOrderNotStartableError(work_order_id, "it already has open operations")

        initial_context = dict(context or {})
        selection = self.registry.select_workflow(
            requested_workflow_id=(workflow_id_override or "").strip() or wo.workflow_id,
            priority=wo.priority,
            tags=wo.tags,
            title=wo.title,
            goal=wo.goal,
        )
        workflow = self.registry.require_workflow_config(selection.workflow_id)

        stage_index, _ = next_runnable_stage(workflow, 0, initial_context)
        if stage_index is None:
            raise WorkOrderNotStartableError(
                work_order_id, f"workflow {workflow.id} has no runnable stages"
            )
        stage = workflow.stages[stage_index]
        agent = await self.resolver.resolve_stage_agent(stage.agent)
        if agent is None:
            raise NoAgentAvailableError(stage.agent)

        async with self.store.transaction():
            if force:
                superseded = await self.store.block_open_operations(
                    work_order_id, SUPERSEDED_REASON
                )
                if superseded:
                    logger.info(
                        "Superseded %d open operations of %s", superseded, work_order_id
                    )
            await self.store.update_work_order(
                work_order_id,
                workflow_id=workflow.id,
                current_stage=stage_index,
                state=WorkOrderState.ACTIVE,
                blocked_reason=None,
            )
            await self.store.record_activity(
                ActivityType.WORKFLOW_STARTED,
                "work_order",
                work_order_id,
                f"Started workflow: {workflow.id}",
                {
                    "workflowId": workflow.id,
                    "startIndex": stage_index,
                    "stageRef": stage.ref,
                    "selectedBy": selection.reason.value,
                    "selectedRule": selection.matched_rule_id,
                    "initialContext": initial_context,
                },
                actor=self.config.actor,
            )
            op = await self.store.create_operation(
                new_stage_operation(
                    work_order_id=work_order_id,
                    workflow=workflow,
                    stage_index=stage_index,
                    agent=agent,
                    title=stage_title(agent, stage_index, len(workflow.stages)),
                    iteration_count=0,
                    max_retries=self.config.default_max_retries,
                )
            )

        logger.info(
            "Started work order %s on workflow %s (%s) at stage %s",
            work_order_id,
            workflow.id,
            selection.reason.value,
            stage.ref,
        )

        dispatch = await self.dispatcher.dispatch_operation(op.id)
        if not dispatch.dispatched:
            error = dispatch.error or "Failed to dispatch workflow start operation"
            await self.store.update_work_order(
                work_order_id, state=WorkOrderState.BLOCKED, blocked_reason=error
            )
            raise DispatchError(error)

        return StartResult(
            work_order_id=work_order_id,
            operation_id=op.id,
            workflow_id=workflow.id,
            stage_index=stage_index,
            agent_id=dispatch.agent_id or agent.id,
            agent_name=dispatch.agent_name or agent.display_name,
            session_key=dispatch.session_key,
        )

    async def resume_work_order(self, work_order_id: str, reason: str = "manual") -> ResumeResult:
        """Re-enter a run at its most recently updated blocked/todo/rework operation.

        A planned work order is simply started; one with no resumable
        operation is force-restarted from its first runnable stage. Shipped
        work orders are final.
        """
        wo = await self._get_work_order(work_order_id)
        if is_security_veto(wo.blocked_reason):
            raise SecurityVetoError(work_order_id)
        if wo.state == WorkOrderState.SHIPPED:
            raise WorkOrderNotStartableError(work_order_id, "it has already shipped")

        resume_context = {"resumed": True, "reason": reason}
        if wo.state == WorkOrderState.PLANNED:
            started = await self.start_work_order(work_order_id, context=resume_context)
            return ResumeResult(**started.model_dump())

        candidate = await self.store.latest_resumable_operation(work_order_id)
        if candidate is None:
            started = await self.start_work_order(
                work_order_id, context=resume_context, force=True
            )
            return ResumeResult(**started.model_dump(), restarted=True)

        async with self.store.transaction():
            await self.store.update_work_order(
                work_order_id, state=WorkOrderState.ACTIVE, blocked_reason=None
            )
            await self.store.update_operation(
                candidate.id,
                status=OperationStatus.TODO,
                blocked_reason=None,
                claimed_by=None,
                claim_expires_at=None,
            )
            await self.store.record_activity(
                ActivityType.WORKFLOW_RESUMED,
                "work_order",
                work_order_id,
                "Resumed workflow execution",
                {"operationId": candidate.id, "reason": reason},
                actor=self.config.actor,
            )
        logger.info("Resuming work order %s at operation %s", work_order_id, candidate.id)

        dispatch = await self.dispatcher.dispatch_operation(candidate.id)
        if not dispatch.dispatched:
            error = dispatch.error or "Failed to dispatch resumed operation"
            await self.store.update_work_order(
                work_order_id, state=WorkOrderState.BLOCKED, blocked_reason=error
            )
            raise DispatchError(error)

        return ResumeResult(
            work_order_id=work_order_id,
            operation_id=candidate.id,
            workflow_id=dispatch.workflow_id,
            stage_index=dispatch.stage_index,
            agent_id=dispatch.agent_id or "",
            agent_name=dispatch.agent_name or "",
            session_key=dispatch.session_key,
        )

    # ── Completion ───────────────────────────────────────────────────────

    async def advance_on_completion(
        self,
        operation_id: str,
        result: StageResult,
        completion_token: str | None = None,
    ) -> CompletionResult:
        """Apply an agent's reported outcome for ``operation_id``.

        Safe to call repeatedly: a known ``completion_token`` or an operation
        no longer in progress yields a no-op result instead of a second
        transition.
        """
        op = await self.store.get_operation(operation_id)
        if op is None:
            raise OperationNotFoundError(operation_id)

        token = (completion_token or "").strip() or None
        if token and await self.store.has_completion_token(token):
            return CompletionResult(duplicate=True, noop=True, code=CompletionCode.STALE_IGNORED)

        if op.status == OperationStatus.DONE:
            return CompletionResult(noop=True, code=CompletionCode.STALE_IGNORED)

        if op.status != OperationStatus.IN_PROGRESS:
            await self.store.record_activity(
                ActivityType.WORKFLOW_COMPLETION_IGNORED,
                "operation",
                operation_id,
                f"Ignored completion: operation not in_progress ({op.status.value})",
                {
                    "operationId": operation_id,
                    "status": op.status.value,
                    "resultStatus": result.status.value,
                },
                actor=self.config.actor,
            )
            return CompletionResult(noop=True, code=CompletionCode.INVALID_STATE)

        wo = await self.store.get_work_order(op.work_order_id)
        if wo is None:
            raise WorkflowIntegrityError(
                f"Operation {operation_id} references missing work order {op.work_order_id}"
            )
        if wo.state != WorkOrderState.ACTIVE:
            await self.store.record_activity(
                ActivityType.WORKFLOW_COMPLETION_STALE,
                "operation",
                operation_id,
                f"Ignored stale completion for non-active work order ({wo.state.value})",
                {
                    "operationId": operation_id,
                    "workOrderId": wo.id,
                    "workOrderState": wo.state.value,
                    "resultStatus": result.status.value,
                },
                actor=self.config.actor,
            )
            return CompletionResult(noop=True, code=CompletionCode.STALE_IGNORED)

        outcome = await self.completion.run_completion_tx(operation_id, result, token)
        if outcome.noop is not None:
            return outcome.noop

        if outcome.dispatch_operation_id:
            await self.dispatcher.dispatch_operation(outcome.dispatch_operation_id)
        if outcome.notice is not None:
            await self.notifier.notify(outcome.notice)
        return CompletionResult()

    # ── Recovery & Ticking ───────────────────────────────────────────────

    async def recover_stale_operations(
        self,
        limit: int | None = None,
        auto_dispatch: bool = True,
        now: datetime | None = None,
    ) -> StaleRecoveryResult:
        """Run the stale sweeper under the recovery lease; zeros if another engine holds it."""
        async with self.leases.hold(RECOVERY_LEASE_KEY) as held:
            if not held:
                return StaleRecoveryResult()
            return await self.sweeper.sweep(limit, auto_dispatch=auto_dispatch, now=now)

    async def tick_queue(self, limit: int | None = None, dry_run: bool = False) -> TickResult:
        return await self.ticker.tick(limit, dry_run=dry_run)
