"""
Executor module - runtime of durable workflows.

This module contains the execution components:
- engine: WorkflowEngine, the HTTP-facing endpoint of one workflow
- replay: ReplayEngine, re-executes workflow code against the ledger
- submitter: StepSubmitter, executes or publishes new steps
- notify: wait/notify matching
- failure: FailureHandler
- cancellation: cancel_run
- outcome: WorkflowOutcome state machine (Completed/Suspended)
"""

from pyresume.executor.cancellation import cancel_run
from pyresume.executor.engine import WorkflowEngine, new_run_id
from pyresume.executor.failure import FailureHandler
from pyresume.executor.notify import notify
from pyresume.executor.outcome import (
    Completed,
    Suspended,
    SuspendKind,
    SuspendReason,
    WorkflowOutcome,
    is_completed,
    is_suspended,
)
from pyresume.executor.replay import ReplayEngine, Workflow
from pyresume.executor.submitter import StepSubmitter

__all__ = [
    # Endpoint
    "WorkflowEngine",
    "new_run_id",
    "Workflow",
    # Replay
    "ReplayEngine",
    "StepSubmitter",
    # Outcomes
    "Completed",
    "Suspended",
    "SuspendKind",
    "SuspendReason",
    "WorkflowOutcome",
    "is_completed",
    "is_suspended",
    # Events, failures, cancellation
    "notify",
    "FailureHandler",
    "cancel_run",
]
