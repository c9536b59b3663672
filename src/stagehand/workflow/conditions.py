"""Optional-stage conditions.

Conditions are a closed vocabulary, each mapped to a boolean flag in the
work order's start context. A condition string that is not in the vocabulary
parses to ``None`` and the stage RUNS: workflows are data and may name
conditions that this engine build doesn't know about yet.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from stagehand.workflow.models import WorkflowConfig, WorkflowStage


class StageCondition(str, Enum):
    UNKNOWNS_EXIST = "unknowns_exist"
    DEPLOYMENT_NEEDED = "deployment_needed"
    SECURITY_RELEVANT = "security_relevant"
    CODE_REVIEW_NEEDED = "code_review_needed"

    @classmethod
    def parse(cls, value: str | None) -> StageCondition | None:
        """Return the condition, or None for empty/unrecognized strings."""
        if not value:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


# condition → (camelCase key, snake_case key) in the start context
_CONTEXT_FLAGS: dict[StageCondition, tuple[str, str]] = {
    StageCondition.UNKNOWNS_EXIST: ("hasUnknowns", "has_unknowns"),
    StageCondition.DEPLOYMENT_NEEDED: ("needsDeployment", "needs_deployment"),
    StageCondition.SECURITY_RELEVANT: ("touchesSecurity", "touches_security"),
    StageCondition.CODE_REVIEW_NEEDED: ("hasCodeChanges", "has_code_changes"),
}


def evaluate_condition(condition: str | None, context: dict[str, Any]) -> bool:
    """True if a stage guarded by ``condition`` should run for this context."""
    parsed = StageCondition.parse(condition)
    if parsed is None:
        return True
    camel, snake = _CONTEXT_FLAGS[parsed]
    if camel in context:
        return bool(context[camel])
    return bool(context.get(snake, False))


def should_run_stage(stage: WorkflowStage, context: dict[str, Any]) -> bool:
    """Non-optional stages always run; optional ones run when their condition holds."""
    if not stage.optional:
        return True
    return evaluate_condition(stage.condition, context)


def next_runnable_stage(
    workflow: WorkflowConfig,
    start_index: int,
    context: dict[str, Any],
) -> tuple[int | None, list[int]]:
    """Walk forward from ``start_index`` to the first stage that should run.

    Returns (index or None when the workflow is exhausted, indices skipped).
    """
    skipped: list[int] = []
    index = start_index
    while index < len(workflow.stages):
        if should_run_stage(workflow.stages[index], context):
            return index, skipped
        skipped.append(index)
        index += 1
    return None, skipped
