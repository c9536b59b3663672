"""Stale operation recovery.

Finds ``in_progress`` operations whose claim expired or that have not been
touched for ``stale_operation_age_seconds``, and either requeues them (while
retry budget remains) or escalates them with ``stale_timeout_exceeded``.

An operation whose agent session reported in within the last
``active_session_max_age_seconds`` is left alone even if its claim expired:
the agent is still working on it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from stagehand.activity import ActivityType
from stagehand.escalation import escalate_operation
from stagehand.models import (
    EscalationReason,
    Operation,
    OperationStatus,
    StaleRecoveryResult,
    utcnow,
)

if TYPE_CHECKING:
    from stagehand.config import EngineConfig
    from stagehand.dispatcher import Dispatcher
    from stagehand.store import EngineStore
    from stagehand.workflow import WorkflowRegistry

logger = logging.getLogger(__name__)

STALE_ESCALATION_FEEDBACK = (
    "Operation timed out with no active session and exceeded retry budget."
)


class StaleOperationSweeper:
    def __init__(
        self,
        store: EngineStore,
        registry: WorkflowRegistry,
        dispatcher: Dispatcher,
        config: EngineConfig,
    ):
        self.store = store
        self.registry = registry
        self.dispatcher = dispatcher
        self.config = config

    async def sweep(
        self,
        limit: int | None = None,
        auto_dispatch: bool = True,
        now: datetime | None = None,
    ) -> StaleRecoveryResult:
        """Run one recovery pass. Per-candidate failures are recorded, never raised."""
        now = now or utcnow()
        stale_before = now - timedelta(seconds=self.config.stale_operation_age_seconds)
        seen_since = now - timedelta(seconds=self.config.active_session_max_age_seconds)

        candidates = await self.store.list_stale_candidates(
            now, stale_before, self.config.clamp_limit(limit)
        )
        result = StaleRecoveryResult(scanned=len(candidates))

        for op in candidates:
            try:
                if await self.store.has_active_session(op.id, seen_since):
                    logger.debug("Operation %s has a live session; not recovering", op.id)
                    result.skipped_active += 1
                    continue

                if op.retry_count < op.max_retries:
                    if await self._requeue(op):
                        result.recovered += 1
                        if auto_dispatch:
                            await self.dispatcher.dispatch_operation(op.id)
                    continue

                if await self._escalate(op):
                    result.escalated += 1
            except Exception as e:
                result.failures += 1
                logger.exception("Stale recovery failed for operation %s", op.id)
                try:
                    await self.store.record_activity(
                        ActivityType.WORKFLOW_STALE_RECOVERY_FAILED,
                        "operation",
                        op.id,
                        "Failed stale recovery attempt",
                        {"error": str(e)},
                        actor=self.config.actor,
                    )
                except Exception:
                    logger.warning("Could not record recovery failure for %s", op.id)

        if result.scanned:
            logger.info(
                "Stale recovery: scanned=%d recovered=%d escalated=%d skipped_active=%d failures=%d",
                result.scanned,
                result.recovered,
                result.escalated,
                result.skipped_active,
                result.failures,
            )
        return result

    async def _requeue(self, op: Operation) -> bool:
        async with self.store.transaction():
            current = await self.store.get_operation(op.id)
            # Completed or reclaimed since the scan
            if current is None or current.status != OperationStatus.IN_PROGRESS:
                return False
            await self.store.update_operation(
                op.id,
                status=OperationStatus.TODO,
                retry_count=current.retry_count + 1,
                timeout_count=current.timeout_count + 1,
                claimed_by=None,
                claim_expires_at=None,
                blocked_reason=None,
            )
            await self.store.record_activity(
                ActivityType.WORKFLOW_STALE_RECOVERED,
                "operation",
                op.id,
                "Recovered stale operation and queued retry",
                {
                    "operationId": op.id,
                    "retryCount": current.retry_count + 1,
                    "maxRetries": current.max_retries,
                },
                actor=self.config.actor,
            )
        logger.info("Requeued stale operation %s", op.id)
        return True

    async def _escalate(self, op: Operation) -> bool:
        async with self.store.transaction():
            current = await self.store.get_operation(op.id)
            if current is None or current.status != OperationStatus.IN_PROGRESS:
                return False

            workflow = self.registry.get_workflow_config(current.workflow_id)
            stage_index = current.workflow_stage_index
            if workflow is not None and 0 <= stage_index < len(workflow.stages):
                stage_ref = workflow.stages[stage_index].ref
            else:
                stage_ref = f"stage_{stage_index}"

            message = await escalate_operation(
                self.store,
                operation_id=current.id,
                work_order_id=current.work_order_id,
                workflow_id=current.workflow_id,
                stage_index=stage_index,
                stage_label=stage_ref,
                total_stages=len(workflow.stages) if workflow else 0,
                iteration_count=current.iteration_count,
                max_iterations=current.max_retries,
                reason=EscalationReason.STALE_TIMEOUT_EXCEEDED,
                feedback=STALE_ESCALATION_FEEDBACK,
                actor=self.config.actor,
            )
            await self.store.record_activity(
                ActivityType.WORKFLOW_STALE_ESCALATED,
                "operation",
                current.id,
                "Escalated stale operation after retry budget exhaustion",
                {"escalation": message},
                actor=self.config.actor,
            )
        return True
