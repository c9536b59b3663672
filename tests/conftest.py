"""Shared fixtures: a real SQLite store, seeded agents, an in-memory workflow
registry, and a gateway double that records every dispatch and notification."""

from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio

from stagehand.agents import StoreAgentResolver
from stagehand.config import EngineConfig
from stagehand.engine import WorkflowEngine
from stagehand.errors import DispatchError
from stagehand.gateway import DispatchReceipt
from stagehand.models import (
    Agent,
    Operation,
    OperationStatus,
    StageResult,
    WorkOrder,
)
from stagehand.store import EngineStore, new_id
from stagehand.workflow import WorkflowRegistry

DISPATCHABLE = (OperationStatus.TODO, OperationStatus.IN_PROGRESS)


# ── Gateway Double ───────────────────────────────────────────────────────────


class FakeGateway:
    """Records dispatches and session messages; can be told to fail."""

    def __init__(self):
        self.dispatches: list[dict[str, Any]] = []
        self.messages: list[tuple[str, str]] = []
        self.fail_dispatch = False
        self.fail_send = False

    async def dispatch_to_agent(
        self,
        *,
        agent_id: str,
        work_order_id: str,
        operation_id: str,
        task: str,
        context: dict[str, Any],
    ) -> DispatchReceipt:
        if self.fail_dispatch:
            raise DispatchError(f"gateway down for {agent_id}")
        self.dispatches.append(
            {
                "agent_id": agent_id,
                "work_order_id": work_order_id,
                "operation_id": operation_id,
                "task": task,
                "context": context,
            }
        )
        return DispatchReceipt(
            session_key=f"agent:{agent_id}:{operation_id}", session_id=f"sess-{len(self.dispatches)}"
        )

    async def send_to_session(self, session_key: str, text: str) -> None:
        if self.fail_send:
            raise RuntimeError("session unreachable")
        self.messages.append((session_key, text))


# ── Workflows ────────────────────────────────────────────────────────────────

WORKFLOWS = [
    {
        "id": "review_flow",
        "stages": [
            {"ref": "build", "agent": "build"},
            {"ref": "build_review", "agent": "build_review", "loopTarget": "build", "maxIterations": 2},
            {
                "ref": "security",
                "agent": "security",
                "optional": True,
                "condition": "security_relevant",
                "canVeto": True,
            },
            {"ref": "ops", "agent": "ops", "optional": True, "condition": "deployment_needed"},
        ],
    },
    {
        "id": "loop_flow",
        "stages": [
            {"ref": "build", "agent": "build", "type": "loop", "loop": {"maxStories": 5}},
        ],
    },
    {
        "id": "verify_loop_flow",
        "stages": [
            {
                "ref": "build",
                "agent": "build",
                "type": "loop",
                "loop": {"maxStories": 5, "verifyEach": True, "verifyStageRef": "build_review"},
            },
            {"ref": "build_review", "agent": "build_review"},
        ],
    },
    {
        "id": "uncapped_review_flow",
        "stages": [
            {"ref": "build", "agent": "build"},
            {"ref": "build_review", "agent": "build_review", "loopTarget": "build"},
        ],
    },
    {
        "id": "unbounded_loop_flow",
        "stages": [{"ref": "build", "agent": "build", "type": "loop", "loop": {}}],
    },
    {
        "id": "skip_first",
        "stages": [
            {"ref": "ops", "agent": "ops", "optional": True, "condition": "deployment_needed"},
            {"ref": "build", "agent": "build"},
        ],
    },
]

SELECTION = {
    "defaultWorkflowId": "review_flow",
    "rules": [{"id": "epics", "workflowId": "loop_flow", "tagsAny": ["epic"]}],
}

AGENTS = [
    Agent(id="builder", name="builder", display_name="Builder", role="build", station="build",
          capabilities=["build", "code"]),
    Agent(id="reviewer", name="reviewer", display_name="Reviewer", role="build_review",
          station="qa", capabilities=["review", "qa"]),
    Agent(id="sentinel", name="sentinel", display_name="Sentinel", role="security",
          station="security", capabilities=["security"]),
    Agent(id="operator", name="operator", display_name="Operator", role="ops", station="ops",
          capabilities=["deploy"]),
]


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def store(tmp_path):
    s = EngineStore(str(tmp_path / "stagehand.db"))
    await s.initialize()
    yield s
    await s.close()


@pytest_asyncio.fixture
async def seeded_store(store):
    for agent in AGENTS:
        await store.upsert_agent(agent)
    return store


@pytest.fixture
def registry():
    return WorkflowRegistry.from_configs(WORKFLOWS, SELECTION)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def config():
    return EngineConfig(engine_id="engine-test")


@pytest.fixture
def engine(seeded_store, registry, gateway, config):
    return WorkflowEngine(seeded_store, registry, StoreAgentResolver(seeded_store), gateway, config)


@pytest.fixture
def complete(engine):
    """Report a result for the work order's single in-progress operation."""

    async def _complete(work_order_id: str, status: str, token: str | None = None, **fields):
        op = await in_progress_operation(engine.store, work_order_id)
        result = StageResult(status=status, **fields)
        return op, await engine.advance_on_completion(op.id, result, completion_token=token)

    return _complete


# ── Factory Helpers ──────────────────────────────────────────────────────────


def make_work_order(**overrides) -> WorkOrder:
    defaults = {
        "id": new_id("wo"),
        "title": "Add export button",
        "goal": "Users can export reports as CSV",
        "priority": "P2",
    }
    defaults.update(overrides)
    return WorkOrder(**defaults)


def make_operation(**overrides) -> Operation:
    defaults = {
        "id": new_id("op"),
        "work_order_id": "wo-1",
        "title": "Builder — Stage 1/4",
        "workflow_id": "review_flow",
        "workflow_stage_index": 0,
    }
    defaults.update(overrides)
    return Operation(**defaults)


async def in_progress_operation(store: EngineStore, work_order_id: str) -> Operation:
    ops = [
        op
        for op in await store.list_operations(work_order_id)
        if op.status == OperationStatus.IN_PROGRESS
    ]
    assert len(ops) == 1, f"expected one in-progress operation, got {[o.status for o in ops]}"
    return ops[0]


async def dispatchable_operations(store: EngineStore, work_order_id: str) -> list[Operation]:
    return [op for op in await store.list_operations(work_order_id) if op.status in DISPATCHABLE]
