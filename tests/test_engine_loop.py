"""Tests for loop stages: story initialization, sequencing, retries, verification."""

from __future__ import annotations

import json

from stagehand.activity import ActivityType
from stagehand.models import (
    ApprovalType,
    EscalationReason,
    OperationStatus,
    StoryStatus,
    WorkOrderState,
)

from conftest import dispatchable_operations, in_progress_operation, make_work_order

THREE_STORIES = {
    "stories": [
        {"key": "parse", "title": "Parse input", "acceptanceCriteria": ["handles empty file"]},
        {"key": "render", "title": "Render table"},
        {"key": "export", "title": "Export CSV"},
    ]
}


async def start_loop(engine, workflow_id="loop_flow", context=None):
    wo = await engine.store.create_work_order(make_work_order(workflow_id=workflow_id))
    await engine.start_work_order(wo.id, context=context)
    return wo


class TestLoopInitialization:
    async def test_creates_stories_and_redispatches_same_operation(
        self, engine, complete, gateway
    ):
        wo = await start_loop(engine)

        op, _ = await complete(wo.id, "completed", output=THREE_STORIES)

        stories = await engine.store.list_stories(op.id)
        assert [s.story_key for s in stories] == ["parse", "render", "export"]
        assert [s.story_index for s in stories] == [0, 1, 2]
        assert stories[0].acceptance_criteria == ["handles empty file"]
        assert all(s.max_retries == 2 for s in stories)

        stored = await engine.store.get_operation(op.id)
        assert stored.status == OperationStatus.IN_PROGRESS
        assert stored.current_story_id == stories[0].id
        assert gateway.dispatches[-1]["operation_id"] == op.id
        assert gateway.dispatches[-1]["context"]["completed_stories"] == 0
        assert gateway.dispatches[-1]["context"]["stories_remaining"] == 3

        [initialized] = await engine.store.list_activities(
            op.id, ActivityType.WORKFLOW_LOOP_INITIALIZED
        )
        assert initialized.payload["storyCount"] == 3
        assert initialized.payload["maxStoriesConfigured"] == 5

    async def test_accepts_stories_json_string(self, engine, complete):
        wo = await start_loop(engine)

        op, _ = await complete(
            wo.id,
            "completed",
            output={"STORIES_JSON": json.dumps([{"title": "One"}, {"title": "Two"}])},
        )

        assert [s.title for s in await engine.store.list_stories(op.id)] == ["One", "Two"]

    async def test_truncates_to_configured_max(self, engine, complete):
        wo = await start_loop(engine)

        op, _ = await complete(
            wo.id, "completed", output=[{"title": f"S{i}"} for i in range(8)]
        )

        assert len(await engine.store.list_stories(op.id)) == 5

    async def test_stage_without_max_uses_engine_default(self, engine, complete, config):
        config.default_max_stories = 2
        wo = await start_loop(engine, workflow_id="unbounded_loop_flow")

        op, _ = await complete(wo.id, "completed", output=THREE_STORIES)

        assert [s.story_key for s in await engine.store.list_stories(op.id)] == [
            "parse", "render"
        ]

    async def test_start_context_overrides_max_stories(self, engine, complete):
        wo = await start_loop(engine, context={"maxStoriesByStage": {"build": 2}})

        op, _ = await complete(wo.id, "completed", output=THREE_STORIES)

        assert len(await engine.store.list_stories(op.id)) == 2
        [initialized] = await engine.store.list_activities(
            op.id, ActivityType.WORKFLOW_LOOP_INITIALIZED
        )
        assert initialized.payload["maxStoriesUsed"] == 2

    async def test_out_of_range_override_is_ignored(self, engine, complete):
        wo = await start_loop(engine, context={"maxStoriesOverride": 500})

        op, _ = await complete(wo.id, "completed", output=THREE_STORIES)

        assert len(await engine.store.list_stories(op.id)) == 3

    async def test_no_stories_escalates(self, engine, complete, gateway):
        wo = await start_loop(engine)
        dispatched = len(gateway.dispatches)

        op, _ = await complete(wo.id, "completed", output={"notes": "nothing to split"})

        stored = await engine.store.get_operation(op.id)
        assert stored.status == OperationStatus.BLOCKED
        assert stored.escalation_reason == EscalationReason.STORY_RETRY_EXHAUSTED
        assert stored.blocked_reason == "Loop stage did not return STORIES_JSON."
        [approval] = await engine.store.list_approvals(wo.id)
        assert approval.type == ApprovalType.SCOPE_CHANGE
        assert len(gateway.dispatches) == dispatched


class TestLoopSequencing:
    async def test_runs_stories_in_order_then_ships(self, engine, complete, gateway):
        wo = await start_loop(engine)
        op, _ = await complete(wo.id, "completed", output=THREE_STORIES)
        stories = await engine.store.list_stories(op.id)

        seen = []
        for _ in stories:
            current = await in_progress_operation(engine.store, wo.id)
            assert current.id == op.id
            seen.append(current.current_story_id)
            await complete(wo.id, "completed", output={"diff": "+1"})

        assert seen == [s.id for s in stories]
        assert all(s.status == StoryStatus.DONE for s in await engine.store.list_stories(op.id))

        stored = await engine.store.get_operation(op.id)
        assert stored.status == OperationStatus.DONE
        assert stored.current_story_id is None
        assert (await engine.store.get_work_order(wo.id)).state == WorkOrderState.SHIPPED

        completed = await engine.store.list_activities(op.id, ActivityType.WORKFLOW_STORY_COMPLETED)
        assert len(completed) == 3

    async def test_story_progress_reaches_dispatch_context(self, engine, complete, gateway):
        wo = await start_loop(engine)
        op, _ = await complete(wo.id, "completed", output=THREE_STORIES)

        await complete(wo.id, "completed")

        context = gateway.dispatches[-1]["context"]
        assert context["current_story"]["story_key"] == "render"
        assert context["completed_stories"] == 1
        assert context["stories_remaining"] == 2


class TestStoryRetries:
    async def test_rejected_story_is_retried(self, engine, complete, gateway):
        wo = await start_loop(engine)
        op, _ = await complete(wo.id, "completed", output=THREE_STORIES)
        first = (await engine.store.list_stories(op.id))[0]

        await complete(wo.id, "rejected", feedback="crashes on empty file")

        story = await engine.store.get_story(first.id)
        assert story.status == StoryStatus.RUNNING
        assert story.retry_count == 1
        assert story.output == {"verify_feedback": "crashes on empty file", "reason": "story_rejected"}
        assert (await engine.store.get_operation(op.id)).current_story_id == first.id
        assert gateway.dispatches[-1]["context"]["verify_feedback"] == "crashes on empty file"

        [retry] = await engine.store.list_activities(op.id, ActivityType.WORKFLOW_STORY_RETRY)
        assert retry.payload["retryCount"] == 1

    async def test_retry_exhaustion_escalates_once(self, engine, complete, gateway):
        wo = await start_loop(engine)
        op, _ = await complete(wo.id, "completed", output=THREE_STORIES)
        first = (await engine.store.list_stories(op.id))[0]

        await complete(wo.id, "rejected", feedback="still failing")
        await complete(wo.id, "rejected", feedback="still failing")
        dispatched = len(gateway.dispatches)
        await complete(wo.id, "rejected", feedback="still failing")

        story = await engine.store.get_story(first.id)
        assert story.status == StoryStatus.FAILED
        assert story.retry_count == 3

        stored = await engine.store.get_operation(op.id)
        assert stored.status == OperationStatus.BLOCKED
        assert stored.escalation_reason == EscalationReason.STORY_RETRY_EXHAUSTED
        assert (await engine.store.get_work_order(wo.id)).state == WorkOrderState.BLOCKED

        approvals = await engine.store.list_approvals(wo.id)
        assert len(approvals) == 1
        assert "## Escalation: story_retry_exhausted" in approvals[0].question_md
        assert len(gateway.dispatches) == dispatched
        assert await dispatchable_operations(engine.store, wo.id) == []


class TestStoryVerification:
    async def _init(self, engine, complete):
        wo = await start_loop(engine, workflow_id="verify_loop_flow")
        op, _ = await complete(
            wo.id, "completed", output={"stories": [{"title": "Parse"}, {"title": "Render"}]}
        )
        return wo, op

    async def test_story_completion_requests_verify(self, engine, complete, gateway):
        wo, loop_op = await self._init(engine, complete)
        first = (await engine.store.list_stories(loop_op.id))[0]

        await complete(wo.id, "completed", feedback="parser done")

        assert (await engine.store.get_operation(loop_op.id)).status == OperationStatus.REVIEW
        verify = await in_progress_operation(engine.store, wo.id)
        assert verify.verify_link is not None
        assert verify.verify_link.parent_operation_id == loop_op.id
        assert verify.verify_link.story_id == first.id
        assert verify.workflow_stage_index == 1
        assert verify.title == "Reviewer — Verify story"
        assert gateway.dispatches[-1]["agent_id"] == "reviewer"

        live = await dispatchable_operations(engine.store, wo.id)
        assert [op.id for op in live] == [verify.id]

    async def test_verify_approval_moves_to_next_story(self, engine, complete, gateway):
        wo, loop_op = await self._init(engine, complete)
        first, second = await engine.store.list_stories(loop_op.id)
        await complete(wo.id, "completed")

        verify, _ = await complete(wo.id, "approved", feedback="looks good")

        assert (await engine.store.get_operation(verify.id)).status == OperationStatus.DONE
        done = await engine.store.get_story(first.id)
        assert done.status == StoryStatus.DONE
        assert done.output["verify_feedback"] == "looks good"

        resumed = await in_progress_operation(engine.store, wo.id)
        assert resumed.id == loop_op.id
        assert resumed.current_story_id == second.id

    async def test_verify_rejection_retries_story(self, engine, complete, gateway):
        wo, loop_op = await self._init(engine, complete)
        first = (await engine.store.list_stories(loop_op.id))[0]
        await complete(wo.id, "completed")

        verify, _ = await complete(wo.id, "rejected", feedback="missing tests")

        assert (await engine.store.get_operation(verify.id)).status == OperationStatus.BLOCKED
        story = await engine.store.get_story(first.id)
        assert story.retry_count == 1
        assert story.output["reason"] == "verify_rejected"

        resumed = await in_progress_operation(engine.store, wo.id)
        assert resumed.id == loop_op.id
        assert resumed.current_story_id == first.id
        assert gateway.dispatches[-1]["context"]["verify_feedback"] == "missing tests"

    async def test_full_verified_loop_advances_to_next_stage(self, engine, complete):
        wo, loop_op = await self._init(engine, complete)

        for _ in range(2):
            await complete(wo.id, "completed")
            await complete(wo.id, "approved")

        assert (await engine.store.get_operation(loop_op.id)).status == OperationStatus.DONE
        review = await in_progress_operation(engine.store, wo.id)
        assert review.verify_link is None
        assert review.workflow_stage_index == 1

        await complete(wo.id, "approved")
        assert (await engine.store.get_work_order(wo.id)).state == WorkOrderState.SHIPPED
