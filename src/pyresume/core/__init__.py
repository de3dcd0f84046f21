"""
Core types for pyresume.

This module contains the building blocks the executor works with:
- WorkflowContext: Step primitives exposed to workflow code
- Step variants: RunStep, SleepStep, SleepUntilStep, CallStep,
  WaitForEventStep, NotifyStep
- StepLedger: Per-invocation view of a run's steps
- WorkflowConfig: Run-level configuration
- Clock: Time source (SystemClock, ManualClock)
- Error taxonomy rooted at WorkflowError
"""

from pyresume.core.clock import Clock, ManualClock, SystemClock
from pyresume.core.config import DEFAULT_WAIT_TIMEOUT, WorkflowConfig
from pyresume.core.context import EXECUTION_CONTEXT, WorkflowContext, current_context
from pyresume.core.errors import (
    FailureHandlerError,
    NonDeterminismError,
    ProtocolError,
    RunNotFoundError,
    SchedulerError,
    SignatureError,
    StepFailedError,
    StorageError,
    WakeUpPendingError,
    WorkflowError,
)
from pyresume.core.ledger import StepLedger, merge_record, merge_records
from pyresume.core.steps import (
    CallStep,
    NotifyStep,
    RunStep,
    SleepStep,
    SleepUntilStep,
    Step,
    WaitForEventStep,
)

__all__ = [
    "Clock",
    "ManualClock",
    "SystemClock",
    "WorkflowConfig",
    "DEFAULT_WAIT_TIMEOUT",
    "WorkflowContext",
    "EXECUTION_CONTEXT",
    "current_context",
    "WorkflowError",
    "StepFailedError",
    "NonDeterminismError",
    "ProtocolError",
    "RunNotFoundError",
    "SchedulerError",
    "SignatureError",
    "StorageError",
    "FailureHandlerError",
    "WakeUpPendingError",
    "StepLedger",
    "merge_record",
    "merge_records",
    "Step",
    "RunStep",
    "SleepStep",
    "SleepUntilStep",
    "CallStep",
    "WaitForEventStep",
    "NotifyStep",
]
