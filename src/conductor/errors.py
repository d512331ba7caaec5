from __future__ import annotations


class ConductorError(RuntimeError):
    """Base class for orchestration errors surfaced to callers."""


class InstructionRejectedError(ConductorError):
    """Raised when an instruction fails input screening before any task exists."""

    def __init__(self, message: str, *, flags: list[str], score: float) -> None:
        super().__init__(message)
        self.flags = flags
        self.score = score


class TaskGraphError(ConductorError):
    """Raised when declared dependencies cannot form a valid execution order."""


class OrderingViolationError(TaskGraphError):
    """Raised when a dependency was visited but left in an unsettled state."""


class InvalidTransitionError(ConductorError):
    """Raised when a task status change is not in the transition table."""

    def __init__(self, task_id: str, current: str, target: str) -> None:
        super().__init__(f"Illegal status transition for {task_id}: {current} -> {target}")
        self.task_id = task_id
        self.current = current
        self.target = target


class UnknownTaskError(ConductorError):
    """Raised when a task id is not present in the state store."""


class ToolExecutionError(ConductorError):
    """Raised by tool handlers when an effect cannot be performed."""


class StateStoreError(ConductorError):
    """Raised when shared-state operations fail."""
