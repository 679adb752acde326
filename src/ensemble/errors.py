from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ensemble.models import RunReport


class EnsembleError(RuntimeError):
    """Base class for orchestration failures."""

    retriable: bool = False

    def __init__(self, message: str, *, retriable: bool | None = None) -> None:
        super().__init__(message)
        if retriable is not None:
            self.retriable = retriable


class DecompositionError(EnsembleError):
    """Raised when a task batch is invalid; nothing from the batch is persisted."""


class TaskDependencyError(DecompositionError):
    """Raised when a task references a dependency id outside the batch."""

    def __init__(self, task_id: str, missing: list[str]) -> None:
        super().__init__(
            f"Task '{task_id}' depends on unknown task id(s): {', '.join(sorted(missing))}"
        )
        self.task_id = task_id
        self.missing = sorted(missing)


class WorkspaceError(EnsembleError):
    """Raised when a workspace cannot be created or torn down."""

    retriable = True


class WorkspaceConflict(WorkspaceError):
    """Raised when a workspace for the task already exists."""


class AgentSpawnError(EnsembleError):
    """Raised when the agent executable cannot be located or started."""

    retriable = True


class AgentTimeoutError(EnsembleError):
    """Raised when an agent exceeds its per-task timeout and was force-terminated."""

    retriable = True

    def __init__(self, task_id: str, timeout_seconds: float) -> None:
        super().__init__(f"Agent for task '{task_id}' timed out after {timeout_seconds:.1f}s")
        self.task_id = task_id
        self.timeout_seconds = timeout_seconds


class ApprovalRejected(EnsembleError):
    """Raised (and recorded) when an operator rejects a gated task."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task '{task_id}' was rejected at the approval gate")
        self.task_id = task_id


class StoreWriteError(EnsembleError):
    """Raised when a durable write fails. Fatal to the run."""


class RunAborted(EnsembleError):
    """Raised when a run halts on a batch-level error. Carries the partial report."""

    def __init__(self, message: str, report: RunReport) -> None:
        super().__init__(message)
        self.report = report
