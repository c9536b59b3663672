"""Tests for advance_on_completion — single-stage transitions, loop-back, veto, shipping."""

from __future__ import annotations

import pytest

from stagehand.activity import ActivityType
from stagehand.errors import (
    DispatchError,
    NoAgentAvailableError,
    OperationNotFoundError,
    SecurityVetoError,
)
from stagehand.models import (
    ApprovalType,
    ArtifactType,
    CompletionCode,
    EscalationReason,
    OperationStatus,
    StageResult,
    WorkOrderState,
)

from conftest import dispatchable_operations, in_progress_operation, make_work_order


async def started(engine, context=None, **wo_fields):
    wo = await engine.store.create_work_order(make_work_order(**wo_fields))
    await engine.start_work_order(wo.id, context=context)
    return wo


# ── Advancing & Shipping ─────────────────────────────────────────────────────


class TestAdvance:
    async def test_approval_advances_to_next_stage(self, engine, complete, gateway):
        wo = await started(engine)

        build_op, result = await complete(wo.id, "approved", feedback="implemented")

        assert result.noop is False
        assert result.duplicate is False
        assert (await engine.store.get_operation(build_op.id)).status == OperationStatus.DONE

        review = await in_progress_operation(engine.store, wo.id)
        assert review.workflow_stage_index == 1
        assert review.assignee_agent_ids == ["reviewer"]
        assert gateway.dispatches[-1]["agent_id"] == "reviewer"
        assert (await engine.store.get_work_order(wo.id)).current_stage == 1

        advanced = await engine.store.list_activities(review.id, ActivityType.WORKFLOW_ADVANCED)
        assert advanced[0].payload["fromStageIndex"] == 0
        assert advanced[0].payload["toStageIndex"] == 1

    async def test_ships_after_last_runnable_stage(self, engine, complete, gateway):
        wo = await started(engine)

        await complete(wo.id, "approved")
        await complete(wo.id, "approved")

        stored = await engine.store.get_work_order(wo.id)
        assert stored.state == WorkOrderState.SHIPPED
        assert stored.shipped_at is not None
        assert await dispatchable_operations(engine.store, wo.id) == []

        skipped = await engine.store.list_activities(wo.id, ActivityType.WORKFLOW_STAGE_SKIPPED)
        assert [a.payload["stageRef"] for a in skipped] == ["security", "ops"]
        assert len(await engine.store.list_activities(wo.id, ActivityType.WORK_ORDER_SHIPPED)) == 1

        session_key, text = gateway.messages[-1]
        assert session_key == "agent:main:main"
        assert text == f"Work Order Complete: {wo.id}\n\nWorkflow: review_flow"
        notified = await engine.store.list_activities(wo.id, ActivityType.MANAGER_NOTIFY_CEO)
        assert notified[0].summary == "Notified CEO: completion"

    async def test_conditional_stage_runs_when_context_flag_set(self, engine, complete):
        wo = await engine.store.create_work_order(make_work_order())
        await engine.start_work_order(wo.id, context={"touchesSecurity": True})

        await complete(wo.id, "approved")
        await complete(wo.id, "approved")

        security = await in_progress_operation(engine.store, wo.id)
        assert security.workflow_stage_index == 2
        assert security.assignee_agent_ids == ["sentinel"]

    async def test_failure_blocks_without_dispatch(self, engine, complete, gateway):
        wo = await started(engine)
        dispatched = len(gateway.dispatches)

        op, _ = await complete(wo.id, "rejected", feedback="tests are red")

        stored_op = await engine.store.get_operation(op.id)
        assert stored_op.status == OperationStatus.BLOCKED
        assert stored_op.blocked_reason == "tests are red"
        stored = await engine.store.get_work_order(wo.id)
        assert stored.state == WorkOrderState.BLOCKED
        assert stored.blocked_reason == "tests are red"
        assert len(gateway.dispatches) == dispatched

    async def test_writes_receipt_and_artifacts(self, engine, complete):
        wo = await started(engine)

        op, _ = await complete(
            wo.id,
            "approved",
            output={"summary": "done"},
            artifacts=[
                "https://github.com/acme/app/pull/7",
                "docs/export.md",
                "shots/button.PNG",
                "https://ci.example.com/run/1",
                "src/export.py",
            ],
        )

        [receipt] = await engine.store.list_receipts(op.id)
        assert receipt.command_name == "agent:builder"
        assert receipt.exit_code == 0
        assert receipt.command_args["agentName"] == "Builder"
        assert receipt.parsed["output"] == {"summary": "done"}

        artifacts = await engine.store.list_artifacts(wo.id)
        assert [a.type for a in artifacts] == [
            ArtifactType.PR,
            ArtifactType.DOC,
            ArtifactType.SCREENSHOT,
            ArtifactType.LINK,
            ArtifactType.FILE,
        ]
        assert {a.created_by for a in artifacts} == {"Builder"}


# ── Idempotency & Guards ─────────────────────────────────────────────────────


class TestCompletionGuards:
    async def test_duplicate_token_is_noop(self, engine, complete):
        wo = await started(engine)
        op, first = await complete(wo.id, "approved", token="tok-1")
        assert first.duplicate is False
        activities_before = await engine.store.count_activities()
        ops_before = len(await engine.store.list_operations(wo.id))

        again = await engine.advance_on_completion(
            op.id, StageResult(status="approved"), completion_token="tok-1"
        )

        assert again.duplicate is True
        assert again.noop is True
        assert again.code == CompletionCode.STALE_IGNORED
        assert await engine.store.count_activities() == activities_before
        assert len(await engine.store.list_operations(wo.id)) == ops_before

    async def test_token_reused_on_another_operation_is_duplicate(self, engine, complete):
        wo = await started(engine)
        await complete(wo.id, "approved", token="tok-shared")

        _, result = await complete(wo.id, "approved", token="tok-shared")

        assert result.duplicate is True
        review = await in_progress_operation(engine.store, wo.id)
        assert review.workflow_stage_index == 1

    async def test_done_operation_is_stale(self, engine, complete):
        wo = await started(engine)
        op, _ = await complete(wo.id, "approved")

        result = await engine.advance_on_completion(op.id, StageResult(status="approved"))

        assert result.noop is True
        assert result.duplicate is False
        assert result.code == CompletionCode.STALE_IGNORED

    async def test_operation_not_in_progress_is_invalid_state(self, engine, gateway):
        gateway.fail_dispatch = True
        wo = await engine.store.create_work_order(make_work_order())
        with pytest.raises(DispatchError):
            await engine.start_work_order(wo.id)
        [op] = await engine.store.list_operations(wo.id)

        result = await engine.advance_on_completion(op.id, StageResult(status="approved"))

        assert result.noop is True
        assert result.code == CompletionCode.INVALID_STATE
        ignored = await engine.store.list_activities(op.id, ActivityType.WORKFLOW_COMPLETION_IGNORED)
        assert ignored[0].payload["status"] == "blocked"

    @pytest.mark.parametrize(
        "status,code",
        [
            (OperationStatus.DONE, CompletionCode.STALE_IGNORED),
            (OperationStatus.BLOCKED, CompletionCode.INVALID_STATE),
            (OperationStatus.TODO, CompletionCode.INVALID_STATE),
        ],
    )
    async def test_status_changed_before_transaction(self, engine, status, code):
        wo = await started(engine)
        op = await in_progress_operation(engine.store, wo.id)
        # Another completion or a recovery pass got there first
        await engine.store.update_operation(op.id, status=status)

        outcome = await engine.completion.run_completion_tx(
            op.id, StageResult(status="approved"), "tok-raced"
        )

        assert outcome.noop.noop is True
        assert outcome.noop.code == code
        assert await engine.store.has_completion_token("tok-raced") is False
        assert await engine.store.list_receipts(op.id) == []

    async def test_inactive_work_order_is_stale(self, engine):
        wo = await started(engine)
        op = await in_progress_operation(engine.store, wo.id)
        await engine.store.update_work_order(wo.id, state=WorkOrderState.BLOCKED)

        result = await engine.advance_on_completion(op.id, StageResult(status="approved"))

        assert result.noop is True
        assert result.code == CompletionCode.STALE_IGNORED
        assert (await engine.store.get_operation(op.id)).status == OperationStatus.IN_PROGRESS
        stale = await engine.store.list_activities(op.id, ActivityType.WORKFLOW_COMPLETION_STALE)
        assert stale[0].payload["workOrderState"] == "blocked"

    async def test_unknown_operation_raises(self, engine):
        with pytest.raises(OperationNotFoundError):
            await engine.advance_on_completion("op-missing", StageResult(status="approved"))

    async def test_failed_transition_rolls_back_token(self, engine, complete, seeded_store):
        wo = await started(engine)
        # Nobody left to review: creating the next stage's operation fails
        await seeded_store.db.execute("DELETE FROM agents WHERE id = 'reviewer'")
        op = await in_progress_operation(engine.store, wo.id)

        with pytest.raises(NoAgentAvailableError):
            await engine.advance_on_completion(
                op.id, StageResult(status="approved"), completion_token="tok-rollback"
            )

        assert await engine.store.has_completion_token("tok-rollback") is False
        assert (await engine.store.get_operation(op.id)).status == OperationStatus.IN_PROGRESS
        assert await engine.store.list_receipts(op.id) == []


# ── Review Loop-Back ─────────────────────────────────────────────────────────


class TestLoopBack:
    async def test_rejection_loops_back_to_target(self, engine, complete, gateway):
        wo = await started(engine)
        await complete(wo.id, "approved")

        review, _ = await complete(wo.id, "rejected", feedback="missing edge cases")

        assert (await engine.store.get_operation(review.id)).status == OperationStatus.REWORK
        rework = await in_progress_operation(engine.store, wo.id)
        assert rework.workflow_stage_index == 0
        assert rework.iteration_count == 1
        assert rework.loop_target_op_id == review.id
        assert rework.title == "[Rework] Builder (iteration 1)"
        assert rework.notes == "missing edge cases"
        assert "---\nContext:\nmissing edge cases" in gateway.dispatches[-1]["task"]
        assert (await engine.store.get_work_order(wo.id)).current_stage == 0

        live = await dispatchable_operations(engine.store, wo.id)
        assert [op.id for op in live] == [rework.id]

    async def test_iteration_cap_escalates_on_third_rejection(self, engine, complete, gateway):
        wo = await started(engine)

        for expected_iteration in (1, 2):
            await complete(wo.id, "approved")
            await complete(wo.id, "rejected", feedback="still wrong")
            rework = await in_progress_operation(engine.store, wo.id)
            assert rework.iteration_count == expected_iteration

        await complete(wo.id, "approved")
        review, _ = await complete(wo.id, "rejected", feedback="still wrong")

        stored_review = await engine.store.get_operation(review.id)
        assert stored_review.status == OperationStatus.BLOCKED
        assert stored_review.escalation_reason == EscalationReason.ITERATION_CAP_EXCEEDED
        assert stored_review.escalated_at is not None
        assert (await engine.store.get_work_order(wo.id)).state == WorkOrderState.BLOCKED
        assert await dispatchable_operations(engine.store, wo.id) == []

        [approval] = await engine.store.list_approvals(wo.id)
        assert approval.type == ApprovalType.SCOPE_CHANGE
        assert "## Escalation: iteration_cap_exceeded" in approval.question_md
        assert "**Iterations:** 2/2" in approval.question_md

        escalated = await engine.store.list_activities(
            review.id, ActivityType.ESCALATION_ITERATION_CAP_EXCEEDED
        )
        assert escalated[0].summary == "Escalated to CEO: iteration_cap_exceeded"
        assert gateway.messages[-1][1] == approval.question_md

    async def test_stage_without_cap_uses_engine_default(self, engine, complete, config):
        config.default_max_iterations = 1
        wo = await started(engine, workflow_id="uncapped_review_flow")

        await complete(wo.id, "approved")
        await complete(wo.id, "rejected", feedback="try again")
        assert (await in_progress_operation(engine.store, wo.id)).iteration_count == 1

        await complete(wo.id, "approved")
        review, _ = await complete(wo.id, "rejected", feedback="still wrong")

        stored_review = await engine.store.get_operation(review.id)
        assert stored_review.escalation_reason == EscalationReason.ITERATION_CAP_EXCEEDED
        [approval] = await engine.store.list_approvals(wo.id)
        assert "**Iterations:** 1/1" in approval.question_md


# ── Security Veto ────────────────────────────────────────────────────────────


class TestSecurityVeto:
    async def _reach_security(self, engine, complete):
        wo = await engine.store.create_work_order(make_work_order())
        await engine.start_work_order(wo.id, context={"touchesSecurity": True})
        await complete(wo.id, "approved")
        await complete(wo.id, "approved")
        return wo

    async def test_veto_permanently_blocks(self, engine, complete, gateway):
        wo = await self._reach_security(engine, complete)

        op, _ = await complete(wo.id, "vetoed", feedback="token written to logs")

        stored = await engine.store.get_work_order(wo.id)
        assert stored.state == WorkOrderState.BLOCKED
        assert stored.blocked_reason == "security_veto: token written to logs"
        assert stored.is_vetoed

        stored_op = await engine.store.get_operation(op.id)
        assert stored_op.status == OperationStatus.BLOCKED
        assert stored_op.escalation_reason == EscalationReason.SECURITY_VETO

        [approval] = await engine.store.list_approvals(wo.id)
        assert approval.type == ApprovalType.RISKY_ACTION

        [veto] = await engine.store.list_activities(wo.id, ActivityType.WORKFLOW_SECURITY_VETO)
        assert veto.payload["final"] is True

        assert gateway.messages[-1][1] == (
            f"Security Veto Finalized: {wo.id}\n\nStage: security\nReason: token written to logs"
        )

        with pytest.raises(SecurityVetoError):
            await engine.start_work_order(wo.id, force=True)
        with pytest.raises(SecurityVetoError):
            await engine.resume_work_order(wo.id)

    async def test_veto_from_stage_without_veto_power_is_plain_failure(self, engine, complete):
        wo = await started(engine)

        await complete(wo.id, "vetoed", feedback="no")

        stored = await engine.store.get_work_order(wo.id)
        assert stored.state == WorkOrderState.BLOCKED
        assert stored.is_vetoed is False
        assert await engine.store.list_approvals(wo.id) == []


# ── Notifications ────────────────────────────────────────────────────────────


class TestNotificationFailure:
    async def test_failed_notice_is_recorded_not_raised(self, engine, complete, gateway):
        gateway.fail_send = True
        wo = await started(engine)
        await complete(wo.id, "approved")

        _, result = await complete(wo.id, "approved")

        assert result.noop is False
        assert (await engine.store.get_work_order(wo.id)).state == WorkOrderState.SHIPPED
        [failed] = await engine.store.list_activities(wo.id, ActivityType.MANAGER_NOTIFY_CEO_FAILED)
        assert failed.summary == "Failed to notify CEO (completion)"
