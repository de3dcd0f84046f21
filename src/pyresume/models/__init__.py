"""Core data models for workflow runs.

Defines the run, ledger, waiter and failure types, the status enums and
retry behavior.

Design: Dependency-Free Models
These types have no dependencies on core, storage or executor modules to
prevent circular imports and enable clean layering.
"""

from pyresume.models.failure import FailureContext
from pyresume.models.results import CallResponse, WaitEventResult
from pyresume.models.retry import RetryableError, RetryPolicy
from pyresume.models.run import WorkflowRun
from pyresume.models.status import RunStatus, StepKind, StepStatus, WaiterStatus
from pyresume.models.step_record import StepKey, StepRecord
from pyresume.models.waiter import NotifyResult, Waiter

__all__ = [
    "WorkflowRun",
    "RunStatus",
    "StepRecord",
    "StepKey",
    "StepKind",
    "StepStatus",
    "Waiter",
    "WaiterStatus",
    "NotifyResult",
    "FailureContext",
    "CallResponse",
    "WaitEventResult",
    "RetryPolicy",
    "RetryableError",
]
