"""
Replay Engine.

Every invocation runs the workflow function from the top. Each awaited
step is answered from the Step Ledger:

    SUCCEEDED  -> the stored result, the step body is not executed again
    FAILED     -> StepFailedError with the stored FailureContext
    PENDING    -> acted on if this invocation owns it, otherwise suspend
    missing    -> the step is new: insert-if-absent, then submit

The first step without a result stops the invocation. Code between steps
therefore runs on every replay; only step bodies are memoized.

A record whose kind differs from the step the code now asks for means
the workflow code changed under a running workflow. That raises
NonDeterminismError instead of returning a result of the wrong type.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Coroutine
from typing import TYPE_CHECKING, Any, TypeVar

import xxhash

from pyresume.core.context import EXECUTION_CONTEXT, WorkflowContext
from pyresume.core.errors import (
    NonDeterminismError,
    SchedulerError,
    StepFailedError,
    StorageError,
)
from pyresume.core.ledger import StepLedger
from pyresume.core.steps import Step
from pyresume.executor.cancellation import cancel_run
from pyresume.executor.outcome import (
    Completed,
    Suspended,
    SuspendKind,
    SuspendReason,
    WorkflowOutcome,
    _SuspendExecution,
)
from pyresume.executor.submitter import StepSubmitter, plan_token
from pyresume.models import FailureContext, StepRecord, StepStatus, WorkflowRun

if TYPE_CHECKING:
    from pyresume.core.clock import Clock
    from pyresume.core.config import WorkflowConfig
    from pyresume.scheduler.base import DurableScheduler
    from pyresume.storage.base import ExecutionLog

logger = logging.getLogger(__name__)

T = TypeVar("T")

Workflow = Callable[[WorkflowContext], Awaitable[Any]]


def batch_id_for(steps: list[Step]) -> str:
    """Deterministic id of a parallel batch from its member keys."""
    joined = "|".join(f"{step.name}#{step.occurrence}" for step in steps)
    digest = xxhash.xxh64(joined.encode("utf-8")).hexdigest()
    return f"batch_{digest}"


class _InvocationState:
    """What one replay learned that user code must not be able to hide."""

    __slots__ = ("suspension", "fatal")

    def __init__(self):
        self.suspension: SuspendReason | None = None
        self.fatal: BaseException | None = None


class ReplayEngine:
    """Re-executes a workflow function against its ledger."""

    def __init__(
        self,
        workflow: Workflow,
        store: ExecutionLog,
        scheduler: DurableScheduler,
        clock: Clock,
        config: WorkflowConfig,
    ):
        self.workflow = workflow
        self.clock = clock
        self._store = store
        self._scheduler = scheduler
        self._config = config
        self.submitter = StepSubmitter(store, scheduler, clock, config)
        self._states: dict[int, _InvocationState] = {}

    async def run(self, run: WorkflowRun, token: str) -> WorkflowOutcome:
        """
        Replay ``run`` once on behalf of the invocation holding ``token``.

        Returns:
            Completed(result) when the function returned, Completed(exc)
            when it raised, Suspended(reason) when it stopped at a step

        Raises:
            SchedulerError, StorageError: Infrastructure failures, even if
                the workflow code caught them
        """
        ledger = StepLedger(run.run_id, await self._store.get_steps(run.run_id))
        ctx = WorkflowContext(run, ledger, token, self)
        state = _InvocationState()
        self._states[id(ctx)] = state

        logger.log(
            self._config.trace_level,
            f"Replaying run {run.run_id} with {len(ledger)} recorded step(s)",
        )
        ctx_token = EXECUTION_CONTEXT.set(ctx)
        try:
            try:
                result = await self.workflow(ctx)
            except _SuspendExecution as s:
                outcome: WorkflowOutcome = Suspended(s.reason)
            except Exception as e:
                outcome = Completed(e)
            else:
                outcome = Completed(result)
        finally:
            EXECUTION_CONTEXT.reset(ctx_token)
            del self._states[id(ctx)]

        if state.fatal is not None:
            raise state.fatal
        if state.suspension is not None:
            # the suspension was swallowed by workflow code
            return Suspended(state.suspension)
        return outcome

    # =========================================================================
    # Step resolution (called through WorkflowContext)
    # =========================================================================

    async def resolve(self, ctx: WorkflowContext, step: Step[T]) -> T:
        return await self._guarded(ctx, self._resolve(ctx, step))

    async def resolve_parallel(self, ctx: WorkflowContext, steps: list[Step[Any]]) -> list[Any]:
        return await self._guarded(ctx, self._resolve_parallel(ctx, steps))

    async def cancel(self, ctx: WorkflowContext) -> None:
        await self._guarded(ctx, self._cancel(ctx))

    async def _guarded(self, ctx: WorkflowContext, work: Coroutine[Any, Any, T]) -> T:
        state = self._states[id(ctx)]
        if state.suspension is not None:
            work.close()
            raise _SuspendExecution(state.suspension)
        try:
            return await work
        except _SuspendExecution as s:
            state.suspension = s.reason
            raise
        except (SchedulerError, StorageError) as e:
            state.fatal = e
            raise

    async def _resolve(self, ctx: WorkflowContext, step: Step[T]) -> T:
        record = ctx.ledger.get(step.key)
        if record is None:
            record = step.new_record(ctx.run_id, self.clock.now())
            record.owner = ctx.token
            if await self._store.insert_step(record):
                ctx.ledger.put(record)
                logger.log(self._config.trace_level, f"Run {ctx.run_id} reached new {step}")
                return await self.submitter.advance(ctx, step, record)
            record = await self._store.get_step(ctx.run_id, step.name, step.occurrence)
            if record is None:
                raise StorageError(f"{step} of run {ctx.run_id} vanished after insert")
            ctx.ledger.put(record)
        return await self._replay_record(ctx, step, record)

    async def _replay_record(self, ctx: WorkflowContext, step: Step[T], record: StepRecord) -> T:
        self._check_kind(step, record)
        if record.status is StepStatus.SUCCEEDED:
            return step.decode(record.result)
        if record.status is StepStatus.FAILED:
            raise _failed(step, record)
        if record.owner == ctx.token:
            return await self.submitter.advance(ctx, step, record)
        logger.log(
            self._config.trace_level,
            f"{step} of run {ctx.run_id} is in flight elsewhere, suspending",
        )
        raise _SuspendExecution(
            SuspendReason(ctx.run_id, SuspendKind.IN_FLIGHT, step.name, step.occurrence)
        )

    @staticmethod
    def _check_kind(step: Step, record: StepRecord) -> None:
        if record.kind is not step.kind:
            raise NonDeterminismError(
                f"Step {step.name!r}#{step.occurrence} was recorded as {record.kind} "
                f"but the workflow now reaches a {step.kind} step"
            )

    # =========================================================================
    # Parallel
    # =========================================================================

    async def _resolve_parallel(self, ctx: WorkflowContext, steps: list[Step[Any]]) -> list[Any]:
        keys = [step.key for step in steps]
        if len(set(keys)) != len(keys):
            raise ValueError("parallel() got the same step twice")

        batch_id = batch_id_for(steps)
        launched: list[tuple[Step, StepRecord]] = []
        for step in steps:
            record = ctx.ledger.get(step.key)
            if record is not None:
                self._check_kind(step, record)
                continue
            record = step.new_record(ctx.run_id, self.clock.now())
            record.batch = batch_id
            record.owner = (
                plan_token(ctx.token, step.key) if step.kind.resolves_inline else ctx.token
            )
            if await self._store.insert_step(record):
                ctx.ledger.put(record)
                launched.append((step, record))
            else:
                stored = await self._store.get_step(ctx.run_id, step.name, step.occurrence)
                if stored is not None:
                    self._check_kind(step, stored)
                    ctx.ledger.put(stored)
        if launched:
            await self.submitter.launch(ctx, launched)

        fresh = {step.key for step, _ in launched}
        relaunch: list[tuple[Step, StepRecord]] = []
        for step in steps:
            record = ctx.ledger.get(step.key)
            if record is None or record.is_terminal or step.key in fresh:
                continue
            if record.owner == ctx.token:
                if step.kind.resolves_inline:
                    # this invocation is the member's plan (or its retry)
                    await self.submitter.advance(ctx, step, record)
                else:
                    relaunch.append((step, record))
            elif (
                step.kind.resolves_inline
                and record.attempts == 0
                and record.owner == plan_token(ctx.token, step.key)
            ):
                relaunch.append((step, record))
        if relaunch:
            await self.submitter.launch(ctx, relaunch)

        records = []
        for step in steps:
            record = ctx.ledger.get(step.key)
            if record is None or not record.is_terminal:
                stored = await self._store.get_step(ctx.run_id, step.name, step.occurrence)
                if stored is not None:
                    ctx.ledger.put(stored)
                    record = stored
            records.append(record)

        for step, record in zip(steps, records):
            if record is not None and record.status is StepStatus.FAILED:
                raise _failed(step, record)
        pending = [
            step for step, record in zip(steps, records) if record is None or not record.is_terminal
        ]
        if pending:
            first = pending[0]
            logger.log(
                self._config.trace_level,
                f"Run {ctx.run_id} waiting on {len(pending)} parallel member(s)",
            )
            raise _SuspendExecution(
                SuspendReason(ctx.run_id, SuspendKind.PARALLEL, first.name, first.occurrence)
            )
        return [step.decode(record.result) for step, record in zip(steps, records)]

    # =========================================================================
    # Cancellation
    # =========================================================================

    async def _cancel(self, ctx: WorkflowContext) -> None:
        await cancel_run(self._store, self._scheduler, ctx.run_id)
        raise _SuspendExecution(SuspendReason(ctx.run_id, SuspendKind.CANCELED))


def _failed(step: Step, record: StepRecord) -> StepFailedError:
    failure = (
        FailureContext.from_json(record.error)
        if record.error
        else FailureContext(status=500, header={}, body="", step_name=step.name)
    )
    return StepFailedError(step.name, step.occurrence, failure)
