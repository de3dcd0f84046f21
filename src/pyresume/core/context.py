"""Task-local execution context for workflow code.

WorkflowContext is the object a workflow function receives. It exposes
the step primitives (run, sleep, sleep_until, call, wait_for_event,
notify, parallel, cancel) and the trigger payload.

Design: Task-Local State (contextvars)
    The active context is also bound to EXECUTION_CONTEXT for the duration
    of one replay, so helpers deep in user code can reach it with
    current_context() instead of threading it through every call.
"""

from __future__ import annotations

from collections import defaultdict
from contextvars import ContextVar
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Optional, TypeVar

from pyresume.core.config import DEFAULT_WAIT_TIMEOUT
from pyresume.core.ledger import StepLedger
from pyresume.core.steps import (
    CallStep,
    NotifyStep,
    RunStep,
    SleepStep,
    SleepUntilStep,
    Step,
    WaitForEventStep,
)
from pyresume.models import WorkflowRun

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from pyresume.executor.replay import ReplayEngine

T = TypeVar("T")


# =============================================================================
# Task-Local Context Variables
# =============================================================================

EXECUTION_CONTEXT: ContextVar[Optional["WorkflowContext"]] = ContextVar(
    "execution_context", default=None
)
"""Task-local WorkflowContext of the replay running in this task.

Usage:
    ```python
    token = EXECUTION_CONTEXT.set(ctx)
    try:
        await workflow(ctx)
    finally:
        EXECUTION_CONTEXT.reset(token)
    ```
"""


def current_context() -> WorkflowContext:
    """
    Return the WorkflowContext of the running workflow.

    Raises:
        RuntimeError: If called outside of a workflow replay
    """
    ctx = EXECUTION_CONTEXT.get()
    if ctx is None:
        raise RuntimeError("No workflow is executing in this task")
    return ctx


# =============================================================================
# WorkflowContext
# =============================================================================


class WorkflowContext:
    """Per-invocation state and step primitives.

    Step names identify steps together with an occurrence index: the
    first ``ctx.run("fetch", ...)`` is ("fetch", 0), the next one with the
    same name is ("fetch", 1). Workflow code must reach steps in the same
    order on every replay.

    Usage:
        ```python
        async def workflow(ctx: WorkflowContext):
            greeting = await ctx.run("step-1", lambda: "hello")
            await ctx.sleep("step-2", 10)
            return await ctx.run("step-2b", lambda: "done")
        ```
    """

    def __init__(
        self,
        run: WorkflowRun,
        ledger: StepLedger,
        token: str,
        engine: ReplayEngine,
    ):
        self.run_id = run.run_id
        self.url = run.url
        self.request_payload = run.initial_payload
        self.payload = run.payload
        self.ledger = ledger
        self.token = token
        self._run = run
        self._engine = engine
        self._occurrences: defaultdict[str, int] = defaultdict(int)

    def _next_occurrence(self, name: str) -> int:
        if not name:
            raise ValueError("Step name must not be empty")
        occurrence = self._occurrences[name]
        self._occurrences[name] = occurrence + 1
        return occurrence

    async def _resolve(self, step: Step[T]) -> T:
        return await self._engine.resolve(self, step)

    @property
    def workflow_run(self) -> WorkflowRun:
        return self._run

    # -------------------------------------------------------------------------
    # Step primitives
    # -------------------------------------------------------------------------

    def run(self, name: str, fn: Callable[[], Awaitable[T] | T]) -> RunStep[T]:
        """
        Run ``fn`` once and memoize its result.

        ``fn`` may be sync or async and must return a JSON-serializable
        value. A raised exception is retried up to the configured retries
        with exponential backoff. After that a StepFailedError is raised at
        this point on every replay.
        """
        return RunStep(self, name, self._next_occurrence(name), fn)

    def sleep(self, name: str, duration: float | timedelta) -> SleepStep:
        """Suspend the run for ``duration`` (seconds or timedelta)."""
        if not isinstance(duration, timedelta):
            duration = timedelta(seconds=duration)
        return SleepStep(self, name, self._next_occurrence(name), duration)

    def sleep_until(self, name: str, when: datetime | float) -> SleepUntilStep:
        """Suspend the run until ``when`` (datetime or unix timestamp)."""
        if not isinstance(when, datetime):
            when = datetime.fromtimestamp(when, tz=self._engine.clock.now().tzinfo)
        return SleepUntilStep(self, name, self._next_occurrence(name), when)

    def call(
        self,
        name: str,
        url: str,
        method: str = "POST",
        body: Any = None,
        headers: dict[str, str] | None = None,
        retries: int = 0,
    ) -> CallStep:
        """
        Make an HTTP request through the Durable Scheduler.

        The run suspends until the scheduler delivers the response. A 2xx
        response resolves to a CallResponse. Anything else (after
        ``retries`` retries) raises StepFailedError.
        """
        return CallStep(
            self,
            name,
            self._next_occurrence(name),
            url,
            method=method,
            body=body,
            headers=headers,
            retries=retries,
        )

    def wait_for_event(
        self,
        name: str,
        event_id: str,
        timeout: float | timedelta = DEFAULT_WAIT_TIMEOUT,
    ) -> WaitForEventStep:
        """
        Suspend until ``notify(event_id, ...)`` or until ``timeout`` expires.

        Resolves to WaitEventResult(event_data, timeout=False) when
        notified and WaitEventResult(None, timeout=True) on timeout.
        """
        if not isinstance(timeout, timedelta):
            timeout = timedelta(seconds=timeout)
        return WaitForEventStep(self, name, self._next_occurrence(name), event_id, timeout)

    def notify(self, name: str, event_id: str, event_data: Any = None) -> NotifyStep:
        """Notify every run waiting on ``event_id``. Resolves to list[NotifyResult]."""
        return NotifyStep(self, name, self._next_occurrence(name), event_id, event_data)

    async def parallel(self, *steps: Step[Any]) -> list[Any]:
        """
        Launch ``steps`` together and wait until all of them succeed.

        Returns the results in argument order. If any member failed
        terminally its StepFailedError is raised.
        """
        if not steps:
            return []
        return await self._engine.resolve_parallel(self, list(steps))

    async def cancel(self) -> None:
        """Cancel this run. Nothing after this call executes."""
        await self._engine.cancel(self)

    def __repr__(self) -> str:
        return f"WorkflowContext(run_id={self.run_id!r}, steps={len(self.ledger)})"
