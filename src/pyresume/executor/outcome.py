"""
Invocation outcomes and suspension reasons.

An invocation of the workflow endpoint either runs the workflow function
to its end (Completed) or stops at a step whose result is not available
yet (Suspended).

Example:
    ```python
    outcome = await replay.run(run, token)

    match outcome:
        case Completed(result):
            print(f"Workflow completed: {result}")
        case Suspended(reason):
            print(f"Workflow suspended: {reason}")
    ```
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

__all__ = [
    "SuspendKind",
    "SuspendReason",
    "Completed",
    "Suspended",
    "WorkflowOutcome",
    "is_completed",
    "is_suspended",
    "_SuspendExecution",
]

# Type variable for workflow result type
R = TypeVar("R")


class SuspendKind(Enum):
    """Why the workflow function stopped before finishing."""

    IN_FLIGHT = "IN_FLIGHT"
    """Step is PENDING and owned by another invocation."""

    RETRY = "RETRY"
    """A failed attempt was rescheduled with backoff."""

    SLEEP = "SLEEP"
    CALL = "CALL"
    WAIT = "WAIT"

    PARALLEL = "PARALLEL"
    """Waiting for the remaining members of a parallel batch."""

    CANCELED = "CANCELED"
    """The run was canceled (by the workflow itself or out of band)."""

    def __str__(self) -> str:
        return self.value


# =============================================================================
# Flow Control Signals (Not Errors)
# =============================================================================


class _FlowControl(BaseException):
    """
    Base class for flow control signals.

    Like Python's StopIteration and GeneratorExit, these are control flow
    mechanisms, not errors. They inherit from BaseException (not Exception)
    so that ``except Exception:`` blocks in workflow code never catch them.
    """

    pass


@dataclass(frozen=True)
class SuspendReason:
    """
    Reason why an invocation suspended.

    Attributes:
        run_id: Run that suspended
        kind: Category of the suspension
        step_name: Step the workflow stopped at, None for run-level suspensions
        occurrence: Occurrence index of that step
    """

    run_id: str
    kind: SuspendKind
    step_name: str | None = None
    occurrence: int | None = None

    def __str__(self) -> str:
        if self.step_name is None:
            return f"{self.kind}(run_id={self.run_id})"
        return f"{self.kind}(run_id={self.run_id}, step={self.step_name!r}#{self.occurrence})"


class _SuspendExecution(_FlowControl):  # noqa: N818
    """
    Signal that the workflow function should stop here (not an error).

    Python async functions must complete or raise, so suspension is a
    raise. The replay engine catches it and returns Suspended(reason).
    Never visible to user code.
    """

    def __init__(self, reason: SuspendReason):
        super().__init__(str(reason))
        self.reason = reason


@dataclass(frozen=True)
class Completed(Generic[R]):
    """
    Workflow function finished (success or failure).

    The result can be a success value or an exception. The caller must check
    whether execution succeeded or failed by inspecting the result.

    Attributes:
        result: The workflow's return value (success) or raised exception (failure)
    """

    result: R

    def is_success(self) -> bool:
        """
        Check if the workflow completed successfully.

        Returns:
            True if result is not an exception, False if result is an exception
        """
        return not isinstance(self.result, BaseException)

    def is_failure(self) -> bool:
        return isinstance(self.result, BaseException)

    def __str__(self) -> str:
        """Human-readable string representation."""
        if self.is_success():
            return f"Completed(success={self.result!r})"
        else:
            return f"Completed(error={type(self.result).__name__}: {self.result})"


@dataclass(frozen=True)
class Suspended:
    """
    Workflow function stopped at a step that has no result yet.

    Attributes:
        reason: Why the invocation suspended
    """

    reason: SuspendReason

    def __str__(self) -> str:
        """Human-readable string representation."""
        return f"Suspended({self.reason})"


# WorkflowOutcome is a Union type representing the result of one replay.
#
# Pattern matching (Python 3.10+):
#     match outcome:
#         case Completed(result):
#             handle_result(result)
#         case Suspended(reason):
#             handle_suspension(reason)
#
WorkflowOutcome = Completed[R] | Suspended


def is_completed(outcome: WorkflowOutcome) -> bool:
    """
    Check if an invocation ran the workflow function to its end.

    Args:
        outcome: Replay outcome

    Returns:
        True if outcome is Completed, False if Suspended
    """
    return isinstance(outcome, Completed)


def is_suspended(outcome: WorkflowOutcome) -> bool:
    return isinstance(outcome, Suspended)
