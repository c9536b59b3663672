"""Workflow definition models, parsed from YAML.

Key exports:
    Definition models: WorkflowConfig, WorkflowStage, StageLoopConfig
    Selection models: WorkflowSelectionConfig, SelectionRule, WorkflowSelection
    Enums: StageType, SelectionReason

YAML keys may be written in camelCase (``loopTarget``) or snake_case
(``loop_target``); both populate the same field.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator

STAGE_REF_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_.-]*$")


# ── Enums ────────────────────────────────────────────────────────────────────


class StageType(str, Enum):
    SINGLE = "single"
    LOOP = "loop"


class SelectionReason(str, Enum):
    """Why a workflow was chosen for a work order."""

    EXPLICIT = "explicit"
    RULE = "rule"
    DEFAULT = "default"


# ── Stage Definitions ────────────────────────────────────────────────────────


class StageLoopConfig(BaseModel):
    """Marks a stage as a loop stage that iterates over agent-supplied stories."""

    # None defers to the engine's default_max_stories
    max_stories: int | None = Field(None, alias="maxStories", ge=1)
    verify_each: bool = Field(False, alias="verifyEach")
    verify_stage_ref: str | None = Field(None, alias="verifyStageRef")

    model_config = {"populate_by_name": True}

    def to_payload(self) -> dict[str, Any]:
        return {
            "maxStories": self.max_stories,
            "verifyEach": self.verify_each,
            "verifyStageRef": self.verify_stage_ref,
        }


class WorkflowStage(BaseModel):
    """One step of a workflow, bound to an agent role."""

    ref: str
    agent: str
    type: StageType = StageType.SINGLE
    optional: bool = False
    condition: str | None = None
    loop_target: str | None = Field(None, alias="loopTarget")
    # None defers to the engine's default_max_iterations
    max_iterations: int | None = Field(None, alias="maxIterations", ge=0)
    can_veto: bool = Field(False, alias="canVeto")
    loop: StageLoopConfig | None = None

    model_config = {"populate_by_name": True}

    @model_validator(mode="before")
    @classmethod
    def _default_ref(cls, data: Any) -> Any:
        # Older definitions had no ref; the agent role doubles as one.
        if isinstance(data, dict) and not data.get("ref") and data.get("agent"):
            data = {**data, "ref": data["agent"]}
        return data

    @model_validator(mode="after")
    def _check_ref(self) -> WorkflowStage:
        if not STAGE_REF_PATTERN.match(self.ref):
            raise ValueError(f"Invalid stage ref {self.ref!r}")
        return self


class WorkflowConfig(BaseModel):
    """An ordered list of stages identified by workflow id."""

    id: str
    description: str = ""
    stages: list[WorkflowStage] = Field(min_length=1)

    def stage_index(self, ref_or_agent: str) -> int:
        """Index of the first stage whose ref (or, failing that, agent) matches; -1 if none."""
        for i, stage in enumerate(self.stages):
            if stage.ref == ref_or_agent:
                return i
        for i, stage in enumerate(self.stages):
            if stage.agent == ref_or_agent:
                return i
        return -1

    def validate_semantics(self, source: str = "<memory>") -> None:
        """Cross-stage checks that a field-level schema can't express.

        Raises:
            ValueError: On duplicate refs, loop/type mismatches, or dangling refs.
        """
        refs: set[str] = set()
        for stage in self.stages:
            if stage.ref in refs:
                raise ValueError(
                    f"Workflow {self.id} has duplicate stage ref {stage.ref!r} in {source}"
                )
            refs.add(stage.ref)

        for stage in self.stages:
            if stage.type == StageType.LOOP and stage.loop is None:
                raise ValueError(
                    f"Workflow {self.id} stage {stage.ref!r} is loop type but missing loop config"
                )
            if stage.type != StageType.LOOP and stage.loop is not None:
                raise ValueError(
                    f"Workflow {self.id} stage {stage.ref!r} defines loop config "
                    "but is not loop type"
                )
            if stage.loop_target and stage.loop_target not in refs:
                raise ValueError(
                    f"Workflow {self.id} stage {stage.ref!r} loopTarget "
                    f"{stage.loop_target!r} not found"
                )
            if stage.loop and stage.loop.verify_stage_ref:
                if stage.loop.verify_stage_ref not in refs:
                    raise ValueError(
                        f"Workflow {self.id} stage {stage.ref!r} verifyStageRef "
                        f"{stage.loop.verify_stage_ref!r} not found"
                    )


# ── Selection ────────────────────────────────────────────────────────────────


class SelectionRule(BaseModel):
    """Routes matching work orders to a workflow.

    Every matcher that is set must match; unset matchers match anything.
    """

    id: str
    workflow_id: str = Field(alias="workflowId")
    priority: list[str] = Field(default_factory=list)
    tags_any: list[str] = Field(default_factory=list, alias="tagsAny")
    title_keywords_any: list[str] = Field(default_factory=list, alias="titleKeywordsAny")
    goal_keywords_any: list[str] = Field(default_factory=list, alias="goalKeywordsAny")
    precedes: list[str] = Field(default_factory=list)

    model_config = {"populate_by_name": True}


class WorkflowSelectionConfig(BaseModel):
    default_workflow_id: str = Field(alias="defaultWorkflowId")
    rules: list[SelectionRule] = Field(default_factory=list)

    model_config = {"populate_by_name": True}


class WorkflowSelection(BaseModel):
    """Outcome of selecting a workflow for a work order."""

    workflow_id: str
    reason: SelectionReason
    matched_rule_id: str | None = None
