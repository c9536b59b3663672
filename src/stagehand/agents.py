"""Agent resolution — map a stage's agent-role reference to a concrete worker.

The engine only depends on the ``AgentResolver`` protocol. ``StoreAgentResolver``
is the default implementation over the ``agents`` table: it scores every
available agent against the role reference and picks the best one, preferring
lighter load on ties.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from pydantic import BaseModel

from stagehand.models import Agent, AgentStatus

if TYPE_CHECKING:
    from stagehand.store import EngineStore

logger = logging.getLogger(__name__)


class ResolvedAgent(BaseModel):
    id: str
    name: str
    display_name: str
    station: str | None = None
    session_key: str | None = None
    load: int = 0


class AgentResolver(Protocol):
    async def resolve_stage_agent(self, role_ref: str) -> ResolvedAgent | None: ...


# Per-role hints: (preferred stations, capability keywords)
STAGE_HINTS: dict[str, tuple[set[str], set[str]]] = {
    "research": ({"spec"}, {"research", "analysis", "investigation", "spec"}),
    "plan": ({"spec"}, {"plan", "spec", "architecture", "design"}),
    "plan_review": ({"qa", "spec"}, {"review", "qa", "audit", "plan_review"}),
    "build": ({"build"}, {"build", "implementation", "code", "dev"}),
    "build_review": ({"qa"}, {"review", "qa", "audit", "build_review"}),
    "ui": ({"build"}, {"ui", "frontend", "ux"}),
    "ui_review": ({"qa", "build"}, {"review", "qa", "a11y", "ui_review"}),
    "security": ({"qa", "security"}, {"security", "auth", "vulnerability"}),
    "ops": ({"ops"}, {"ops", "infra", "deploy", "sre"}),
}

_UNAVAILABLE = {AgentStatus.BLOCKED, AgentStatus.ERROR}


def _norm(value: str | None) -> str:
    return (value or "").strip().lower()


def score_agent(agent: Agent, role_ref: str, load: int) -> int | None:
    """Relevance score of ``agent`` for ``role_ref``; None if it can't take the stage."""
    if agent.status in _UNAVAILABLE:
        return None

    ref = _norm(role_ref)
    stations, keywords = STAGE_HINTS.get(ref, (set(), {ref}))
    capabilities = {_norm(c) for c in agent.capabilities}

    relevance = 0
    if ref in (_norm(agent.role), _norm(agent.name), _norm(agent.id)):
        relevance += 200
    if _norm(agent.station) in stations:
        relevance += 120
    if capabilities & keywords:
        relevance += 50
    if any(k in _norm(agent.role) for k in keywords):
        relevance += 20
    if relevance == 0:
        return None

    wip_limit = max(1, agent.wip_limit)
    score = relevance + min(max(0, wip_limit - load), 3) * 5
    if load >= wip_limit:
        score -= 200
    return score


class StoreAgentResolver:
    """Resolve stage agents from the store's agent registry."""

    def __init__(self, store: EngineStore):
        self.store = store

    async def resolve_stage_agent(self, role_ref: str) -> ResolvedAgent | None:
        agents = await self.store.list_agents()
        candidates: list[tuple[int, int, str, Agent]] = []
        for agent in agents:
            load = await self.store.count_agent_open_operations(agent.id)
            score = score_agent(agent, role_ref, load)
            if score is None:
                continue
            candidates.append((score, load, agent.display_name or agent.name, agent))

        if not candidates:
            logger.debug("No agent candidates for stage %s (%d agents)", role_ref, len(agents))
            return None

        candidates.sort(key=lambda c: (-c[0], c[1], c[2]))
        _, load, display_name, best = candidates[0]
        return ResolvedAgent(
            id=best.id,
            name=best.name,
            display_name=display_name,
            station=best.station,
            session_key=best.session_key,
            load=load,
        )
