"""
pyresume: durable workflows on top of an HTTP message scheduler.

A workflow is an async function of a WorkflowContext. Each step result is
recorded in a ledger. Whenever the workflow has to wait (a sleep, an
external call, an event) the invocation ends and the scheduler calls the
endpoint again later; the function is replayed from the top and finished
steps return their recorded results.

Design Pattern: Façade Pattern
This module re-exports what an application needs, hiding the storage,
scheduler and replay machinery.

Example:
    ```python
    from pyresume import WorkflowContext, WorkflowEngine, SqliteExecutionLog

    async def onboarding(ctx: WorkflowContext):
        user = await ctx.run("create-user", lambda: create_user(ctx.payload))
        await ctx.sleep("cool-down", 60)
        payment = await ctx.wait_for_event("wait-payment", f"paid:{user['id']}", timeout=3600)
        if payment.timeout:
            return await ctx.run("remind", lambda: send_reminder(user))
        return await ctx.run("welcome", lambda: send_welcome(user))

    async def main():
        store = SqliteExecutionLog("workflows.db")
        await store.connect()
        engine = WorkflowEngine(onboarding, store, HttpScheduler.from_env())
    ```
"""

from pyresume.client import Client
from pyresume.core import (
    Clock,
    ManualClock,
    SystemClock,
    WorkflowConfig,
    WorkflowContext,
    current_context,
    FailureHandlerError,
    NonDeterminismError,
    ProtocolError,
    RunNotFoundError,
    SchedulerError,
    SignatureError,
    StepFailedError,
    StorageError,
    WorkflowError,
)
from pyresume.executor import (
    Completed,
    Suspended,
    SuspendKind,
    SuspendReason,
    WorkflowEngine,
    WorkflowOutcome,
)
from pyresume.models import (
    CallResponse,
    FailureContext,
    NotifyResult,
    RetryableError,
    RetryPolicy,
    RunStatus,
    StepKind,
    StepRecord,
    StepStatus,
    Waiter,
    WaiterStatus,
    WaitEventResult,
    WorkflowRun,
)
from pyresume.protocol import WorkflowRequest, WorkflowResponse
from pyresume.receiver import Receiver
from pyresume.scheduler import DurableScheduler, HttpScheduler, InMemoryScheduler, Message
from pyresume.storage import (
    ExecutionLog,
    InMemoryExecutionLog,
    RedisExecutionLog,
    SqliteExecutionLog,
)

__version__ = "0.1.0"

__all__ = [
    "__version__",
    # Entry points
    "WorkflowEngine",
    "WorkflowContext",
    "WorkflowConfig",
    "Client",
    "current_context",
    # Results
    "CallResponse",
    "WaitEventResult",
    "NotifyResult",
    "FailureContext",
    "Completed",
    "Suspended",
    "SuspendKind",
    "SuspendReason",
    "WorkflowOutcome",
    # Records
    "WorkflowRun",
    "StepRecord",
    "Waiter",
    "RunStatus",
    "StepStatus",
    "StepKind",
    "WaiterStatus",
    "RetryPolicy",
    "RetryableError",
    # Infrastructure
    "ExecutionLog",
    "InMemoryExecutionLog",
    "SqliteExecutionLog",
    "RedisExecutionLog",
    "DurableScheduler",
    "InMemoryScheduler",
    "HttpScheduler",
    "Message",
    "Receiver",
    "WorkflowRequest",
    "WorkflowResponse",
    "Clock",
    "SystemClock",
    "ManualClock",
    # Errors
    "WorkflowError",
    "StepFailedError",
    "NonDeterminismError",
    "ProtocolError",
    "SignatureError",
    "RunNotFoundError",
    "SchedulerError",
    "StorageError",
    "FailureHandlerError",
]
