"""Tests for agent scoring and resolution."""

from __future__ import annotations

from stagehand.agents import StoreAgentResolver, score_agent
from stagehand.models import Agent, AgentStatus

from conftest import make_operation, make_work_order


def make_agent(**overrides) -> Agent:
    defaults = {"id": "builder", "name": "builder", "display_name": "Builder", "role": "build"}
    defaults.update(overrides)
    return Agent(**defaults)


class TestScoreAgent:
    def test_role_match_scores_highest(self):
        exact = score_agent(make_agent(), "build", load=0)
        station = score_agent(make_agent(id="x", name="x", role="dev", station="build"), "build", 0)

        assert exact > station > 0

    def test_irrelevant_agent_is_excluded(self):
        assert score_agent(make_agent(role="ops", station="ops"), "plan", 0) is None

    def test_unavailable_agent_is_excluded(self):
        assert score_agent(make_agent(status=AgentStatus.ERROR), "build", 0) is None
        assert score_agent(make_agent(status=AgentStatus.BLOCKED), "build", 0) is None

    def test_unknown_ref_matches_by_capability(self):
        assert score_agent(make_agent(role="writer", capabilities=["docs"]), "docs", 0) is not None

    def test_load_at_wip_limit_is_penalized(self):
        idle = score_agent(make_agent(wip_limit=2), "build", 0)
        full = score_agent(make_agent(wip_limit=2), "build", 2)

        assert idle - full >= 200


class TestStoreAgentResolver:
    async def test_picks_best_match(self, seeded_store):
        agent = await StoreAgentResolver(seeded_store).resolve_stage_agent("build_review")

        assert agent.id == "reviewer"
        assert agent.display_name == "Reviewer"
        assert agent.load == 0

    async def test_prefers_lighter_load_on_tie(self, store):
        await store.upsert_agent(make_agent(id="b1", name="b1", display_name="B1"))
        await store.upsert_agent(make_agent(id="b2", name="b2", display_name="B2"))
        wo = await store.create_work_order(make_work_order(id="wo-1"))
        await store.create_operation(make_operation(work_order_id=wo.id, assignee_agent_ids=["b1"]))

        agent = await StoreAgentResolver(store).resolve_stage_agent("build")

        assert agent.id == "b2"

    async def test_display_name_falls_back_to_name(self, store):
        await store.upsert_agent(make_agent(display_name=""))

        agent = await StoreAgentResolver(store).resolve_stage_agent("build")

        assert agent.display_name == "builder"

    async def test_none_when_nobody_fits(self, store):
        await store.upsert_agent(make_agent(role="ops", station="ops"))

        assert await StoreAgentResolver(store).resolve_stage_agent("plan") is None
