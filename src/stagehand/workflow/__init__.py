"""Workflow definitions, conditions, and the YAML-backed registry."""

from stagehand.workflow.conditions import (
    StageCondition,
    evaluate_condition,
    next_runnable_stage,
    should_run_stage,
)
from stagehand.workflow.models import (
    SelectionReason,
    SelectionRule,
    StageLoopConfig,
    StageType,
    WorkflowConfig,
    WorkflowSelection,
    WorkflowSelectionConfig,
    WorkflowStage,
)
from stagehand.workflow.registry import WorkflowRegistry

__all__ = [
    "SelectionReason",
    "SelectionRule",
    "StageCondition",
    "StageLoopConfig",
    "StageType",
    "WorkflowConfig",
    "WorkflowRegistry",
    "WorkflowSelection",
    "WorkflowSelectionConfig",
    "WorkflowStage",
    "evaluate_condition",
    "next_runnable_stage",
    "should_run_stage",
]
