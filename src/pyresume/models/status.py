"""Status enumerations for workflow runs, steps and waiters.

Each enum carries its own transition rules so that storage backends and
the engine agree on which moves are legal.
"""

from enum import Enum


class RunStatus(Enum):
    """Lifecycle of a single workflow run.

    Lifecycle:
        RUNNING ⇄ WAITING → SUCCEEDED
        RUNNING/WAITING → FAILED_PENDING_CALLBACK → FAILED
        RUNNING/WAITING → CANCELED
    """

    RUNNING = "RUNNING"
    """An invocation is replaying the workflow right now."""

    WAITING = "WAITING"
    """Suspended until the scheduler delivers the next message."""

    FAILED_PENDING_CALLBACK = "FAILED_PENDING_CALLBACK"
    """A failure escaped the workflow and the failure handler has not finished."""

    SUCCEEDED = "SUCCEEDED"
    """The workflow function returned."""

    FAILED = "FAILED"
    """The run failed and failure handling is done."""

    CANCELED = "CANCELED"
    """The run was canceled; later deliveries are no-ops."""

    @property
    def is_terminal(self) -> bool:
        """Check if no further invocation may change this run."""
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELED)

    @property
    def is_active(self) -> bool:
        """Check if the run may still schedule new steps."""
        return self in (RunStatus.RUNNING, RunStatus.WAITING)

    def can_transition_to(self, target: "RunStatus") -> bool:
        return target in _RUN_TRANSITIONS[self]

    def __str__(self) -> str:
        return self.value


_RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.RUNNING: frozenset(
        {
            RunStatus.RUNNING,
            RunStatus.WAITING,
            RunStatus.SUCCEEDED,
            RunStatus.FAILED_PENDING_CALLBACK,
            RunStatus.FAILED,
            RunStatus.CANCELED,
        }
    ),
    RunStatus.WAITING: frozenset(
        {
            RunStatus.RUNNING,
            RunStatus.WAITING,
            RunStatus.SUCCEEDED,
            RunStatus.FAILED_PENDING_CALLBACK,
            RunStatus.FAILED,
            RunStatus.CANCELED,
        }
    ),
    RunStatus.FAILED_PENDING_CALLBACK: frozenset(
        {RunStatus.FAILED_PENDING_CALLBACK, RunStatus.FAILED}
    ),
    RunStatus.SUCCEEDED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELED: frozenset(),
}


class StepStatus(Enum):
    """Status of one StepRecord.

    Lifecycle:
        PENDING → SUCCEEDED | FAILED

    Terminal records are immutable. This is what makes replay safe:
    a SUCCEEDED result is returned verbatim forever after.
    """

    PENDING = "PENDING"
    """Step was reached and handed to the submitter, no outcome yet."""

    SUCCEEDED = "SUCCEEDED"
    """Step produced a result."""

    FAILED = "FAILED"
    """Step exhausted its retries."""

    @property
    def is_terminal(self) -> bool:
        return self is not StepStatus.PENDING

    def __str__(self) -> str:
        return self.value


class StepKind(Enum):
    """Closed set of step variants the Execution Context can create."""

    RUN = "RUN"
    SLEEP = "SLEEP"
    SLEEP_UNTIL = "SLEEP_UNTIL"
    CALL = "CALL"
    WAIT_FOR_EVENT = "WAIT_FOR_EVENT"
    NOTIFY = "NOTIFY"

    @property
    def resolves_inline(self) -> bool:
        """Check if the step completes inside the invocation that reaches it."""
        return self in (StepKind.RUN, StepKind.NOTIFY)

    def __str__(self) -> str:
        return self.value


class WaiterStatus(Enum):
    """Status of a waitForEvent registration.

    Lifecycle:
        PENDING → NOTIFIED | TIMED_OUT

    The move out of PENDING is a test-and-set; whichever of the notify
    and the timeout gets there first wins.
    """

    PENDING = "PENDING"
    NOTIFIED = "NOTIFIED"
    TIMED_OUT = "TIMED_OUT"

    @property
    def is_resolved(self) -> bool:
        return self is not WaiterStatus.PENDING

    def __str__(self) -> str:
        return self.value
