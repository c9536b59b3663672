"""Exception hierarchy for the workflow engine.

Expected business outcomes (duplicate or stale completions, lease contention)
are reported through result models. Everything here signals a caller or
integrity problem that aborts the current invocation.
"""

from __future__ import annotations


class StagehandError(Exception):
    """Base class for all engine errors."""


class WorkflowConfigError(StagehandError):
    """Workflow or selection YAML failed schema or semantic validation."""


class WorkOrderNotFoundError(StagehandError):
    def __init__(self, work_order_id: str):
        super().__init__(f"Work order not found: {work_order_id}")
        self.work_order_id = work_order_id


class OperationNotFoundError(StagehandError):
    def __init__(self, operation_id: str):
        super().__init__(f"Operation not found: {operation_id}")
        self.operation_id = operation_id


class UnknownWorkflowError(StagehandError):
    def __init__(self, workflow_id: str):
        super().__init__(f"Unknown workflow: {workflow_id}")
        self.workflow_id = workflow_id


class StageOutOfRangeError(StagehandError):
    def __init__(self, workflow_id: str, stage_index: int):
        super().__init__(f"Stage index {stage_index} out of range for workflow {workflow_id}")
        self.workflow_id = workflow_id
        self.stage_index = stage_index


class WorkflowIntegrityError(StagehandError):
    """Persisted state contradicts itself (e.g. a verify op with no parent loop op)."""


class SecurityVetoError(StagehandError):
    """The work order was permanently blocked by a security veto."""

    def __init__(self, work_order_id: str):
        super().__init__(f"Work order {work_order_id} is blocked by security veto")
        self.work_order_id = work_order_id


class WorkOrderNotStartableError(StagehandError):
    def __init__(self, work_order_id: str, reason: str):
        super().__init__(f"Work order {work_order_id} cannot be started: {reason}")
        self.work_order_id = work_order_id
        self.reason = reason


class NoAgentAvailableError(StagehandError):
    def __init__(self, agent_ref: str):
        super().__init__(f"No available agent for workflow stage: {agent_ref}")
        self.agent_ref = agent_ref


class DispatchError(StagehandError):
    """Sending a task to an agent session failed."""
