"""
Error taxonomy for pyresume.

From Dave Cheney: "Errors are values"
Every failure the engine can report is a WorkflowError subclass carrying
its own context. Errors are raised where they are detected and handled
once, at the engine boundary, which maps them to an HTTP status with
``http_status``.
"""

from pyresume.models import FailureContext


class WorkflowError(Exception):
    """Base class for all pyresume errors."""

    http_status: int = 500


class StepFailedError(WorkflowError):
    """
    A step failed terminally.

    Raised into workflow code at the step that failed, both in the
    invocation that exhausted the retries and on every later replay. If the
    workflow does not catch it, it reaches the Failure Handler.

    Attributes:
        step_name: Name of the failed step
        occurrence: Occurrence index of the failed step
        failure: Status, headers and body of the failure
    """

    def __init__(self, step_name: str, occurrence: int, failure: FailureContext):
        super().__init__(f"Step '{step_name}' (occurrence {occurrence}) failed: {failure}")
        self.step_name = step_name
        self.occurrence = occurrence
        self.failure = failure


class NonDeterminismError(WorkflowError):
    """
    The ledger holds a different kind of step at this position.

    Workflow code must reach the same steps in the same order on every
    replay. The engine only detects the case where a recorded step's kind
    differs from the kind the code asks for.
    """


class ProtocolError(WorkflowError):
    """The inbound request or its envelope is malformed."""

    http_status = 400


class SignatureError(WorkflowError):
    """The request signature is missing or does not verify."""

    http_status = 401


class RunNotFoundError(WorkflowError):
    """A continuation references a run the store does not know."""

    http_status = 404

    def __init__(self, run_id: str):
        super().__init__(f"Workflow run {run_id!r} not found")
        self.run_id = run_id


class SchedulerError(WorkflowError):
    """
    Publishing to or canceling on the Durable Scheduler failed.

    From Dave Cheney: "Add context to errors"
    SchedulerError wraps the transport or API error with the message context.
    """


class StorageError(WorkflowError):
    """
    Storage operation failed.

    From Dave Cheney: "Errors are values"
    Custom exception with context, not generic Exception.
    """


class WakeUpPendingError(WorkflowError):
    """A timeout lost to a notify whose wake-up has not completed the step yet."""

    http_status = 503

    def __init__(self, run_id: str, event_id: str):
        super().__init__(f"Wake-up for event {event_id!r} of run {run_id!r} still in flight")
        self.run_id = run_id
        self.event_id = event_id


class FailureHandlerError(WorkflowError):
    """The failure function raised, the run stays FAILED_PENDING_CALLBACK."""
