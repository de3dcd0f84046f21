"""
Step Scheduler/Submitter.

Decides what happens to a step that has no terminal record yet:

    RUN              execute inline, retry through a delayed continuation
    NOTIFY           match waiters inline
    SLEEP(_UNTIL)    publish a continuation delayed to wake_at
    CALL             publish the request with this endpoint as callback
    WAIT_FOR_EVENT   register a waiter, publish the timeout continuation

Every publish first re-reads the run: a canceled (or finished) run gets
no new messages and the invocation suspends instead.

Ownership:
    A PENDING record carries the token of the invocation allowed to act
    on it. The scheduler redelivers a message with the same body, so a
    crashed or failed invocation's redelivery finds its own token on the
    record and repeats the work. Any other invocation suspends.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

import xxhash
from uuid_extensions import uuid7

from pyresume.core.codec import encode_value
from pyresume.core.config import WorkflowConfig
from pyresume.core.errors import StepFailedError
from pyresume.core.steps import (
    CallStep,
    NotifyStep,
    RunStep,
    SleepStep,
    Step,
    WaitForEventStep,
)
from pyresume.executor.notify import notify as notify_waiters
from pyresume.executor.outcome import SuspendKind, SuspendReason, _SuspendExecution
from pyresume.models import (
    FailureContext,
    RetryableError,
    StepKey,
    StepRecord,
    StepStatus,
    Waiter,
)
from pyresume.protocol import (
    CONTENT_TYPE_JSON,
    Delivery,
    DeliveryType,
    Envelope,
    callback_headers,
    continuation_headers,
)
from pyresume.scheduler.base import DurableScheduler, Message

if TYPE_CHECKING:
    from pyresume.core.clock import Clock
    from pyresume.core.context import WorkflowContext
    from pyresume.storage.base import ExecutionLog

logger = logging.getLogger(__name__)


def new_token() -> str:
    """Fresh invocation token."""
    return str(uuid7())


def plan_token(token: str, key: StepKey) -> str:
    """Token owning a parallel member planned by the invocation holding ``token``."""
    name, occurrence = key
    digest = xxhash.xxh64(f"{token}:{name}:{occurrence}".encode("utf-8")).hexdigest()
    return f"plan_{digest}"


def continuation_message(
    run_id: str,
    url: str,
    token: str,
    steps: list[StepRecord] | None = None,
    delivery: Delivery | None = None,
    delay: float | None = None,
    not_before: datetime | None = None,
) -> Message:
    """Self-invocation of the workflow endpoint carrying a ledger snapshot."""
    envelope = Envelope(run_id=run_id, token=token, steps=list(steps or []), delivery=delivery)
    return Message(
        url=url,
        body=envelope.to_bytes(),
        headers=continuation_headers(run_id),
        delay=delay,
        not_before=not_before,
        run_id=run_id,
    )


def _encode_body(body: Any, headers: dict[str, str]) -> bytes:
    if body is None:
        return b""
    if isinstance(body, bytes):
        return body
    if isinstance(body, str):
        return body.encode("utf-8")
    if not any(name.lower() == "content-type" for name in headers):
        headers["Content-Type"] = CONTENT_TYPE_JSON
    return json.dumps(body).encode("utf-8")


class StepSubmitter:
    """Executes inline steps and publishes the messages of asynchronous ones."""

    def __init__(
        self,
        store: ExecutionLog,
        scheduler: DurableScheduler,
        clock: Clock,
        config: WorkflowConfig,
    ):
        self._store = store
        self._scheduler = scheduler
        self._clock = clock
        self._config = config

    def _trace(self, message: str) -> None:
        logger.log(self._config.trace_level, message)

    def _suspend(self, ctx: WorkflowContext, kind: SuspendKind, step: Step | None = None):
        reason = SuspendReason(
            ctx.run_id,
            kind,
            step.name if step is not None else None,
            step.occurrence if step is not None else None,
        )
        return _SuspendExecution(reason)

    # =========================================================================
    # Single steps
    # =========================================================================

    async def advance(self, ctx: WorkflowContext, step: Step, record: StepRecord) -> Any:
        """
        Act on a PENDING step owned by ``ctx.token``.

        Returns the result of inline steps. Asynchronous steps publish
        their message and suspend the invocation.
        """
        match step:
            case RunStep():
                return await self.execute_run(ctx, step, record)
            case NotifyStep():
                return await self.execute_notify(ctx, step, record)
            case CallStep():
                kind = SuspendKind.CALL
            case WaitForEventStep():
                kind = SuspendKind.WAIT
            case SleepStep():
                kind = SuspendKind.SLEEP
            case _:
                raise TypeError(f"Unknown step type {type(step).__name__}")

        messages = await self._prepare(ctx, step, record)
        await self.publish(ctx, messages)
        self._trace(f"Run {ctx.run_id} suspended at {step} ({kind})")
        raise self._suspend(ctx, kind, step)

    async def _prepare(self, ctx: WorkflowContext, step: Step, record: StepRecord) -> list[Message]:
        match step:
            case CallStep():
                headers = dict(step.headers)
                body = _encode_body(step.body, headers)
                return [
                    Message(
                        url=step.url,
                        body=body,
                        method=step.method,
                        headers=headers,
                        retries=step.retries,
                        callback=ctx.url,
                        callback_headers=callback_headers(ctx.run_id, step.name, step.occurrence),
                        failure_callback=ctx.url,
                        run_id=ctx.run_id,
                    )
                ]
            case WaitForEventStep():
                await self._register_waiter(ctx, step, record)
                return [
                    continuation_message(
                        ctx.run_id,
                        ctx.url,
                        new_token(),
                        ctx.ledger.records(),
                        Delivery(DeliveryType.TIMEOUT, step.name, step.occurrence, step.event_id),
                        not_before=record.wake_at,
                    )
                ]
            case SleepStep():
                return [
                    continuation_message(
                        ctx.run_id,
                        ctx.url,
                        new_token(),
                        ctx.ledger.records(),
                        Delivery(DeliveryType.SLEEP, step.name, step.occurrence),
                        not_before=record.wake_at,
                    )
                ]
            case _:
                raise TypeError(f"{type(step).__name__} is not published")

    async def _register_waiter(
        self, ctx: WorkflowContext, step: WaitForEventStep, record: StepRecord
    ) -> None:
        existing = await self._store.get_waiter(ctx.run_id, step.event_id)
        if existing is not None and existing.step_key == step.key:
            return
        await self._store.put_waiter(
            Waiter(
                run_id=ctx.run_id,
                event_id=step.event_id,
                step_name=step.name,
                occurrence=step.occurrence,
                url=ctx.url,
                timeout_at=record.wake_at,
                created_at=self._clock.now(),
            )
        )

    async def publish(self, ctx: WorkflowContext, messages: list[Message]) -> list[str]:
        """
        Publish messages on behalf of a run that must still be active.

        Raises:
            _SuspendExecution: If the run was canceled or has finished
            SchedulerError: If the scheduler refused the messages
        """
        if not messages:
            return []
        run = await self._store.get_run(ctx.run_id)
        if run is None or not run.status.is_active:
            status = run.status if run is not None else None
            logger.info(f"Run {ctx.run_id} is {status}, not publishing {len(messages)} message(s)")
            raise self._suspend(ctx, SuspendKind.CANCELED)
        if len(messages) == 1:
            return [await self._scheduler.publish(messages[0])]
        return await self._scheduler.batch_publish(messages)

    # =========================================================================
    # Inline steps
    # =========================================================================

    async def execute_run(self, ctx: WorkflowContext, step: RunStep, record: StepRecord) -> Any:
        attempt = record.attempts + 1
        self._trace(f"Executing {step} of run {ctx.run_id} (attempt {attempt})")
        try:
            result = encode_value(await step.execute())
        except Exception as e:
            return await self._on_run_error(ctx, step, record, e, attempt)

        completed = await self._store.complete_step(
            ctx.run_id,
            step.name,
            step.occurrence,
            StepStatus.SUCCEEDED,
            result=result,
            completed_at=self._clock.now(),
            attempts=attempt,
        )
        if not completed:
            return await self._settled(ctx, step)
        record.status = StepStatus.SUCCEEDED
        record.result = result
        record.attempts = attempt
        record.completed_at = self._clock.now()
        ctx.ledger.put(record)
        return step.decode(result)

    async def _on_run_error(
        self,
        ctx: WorkflowContext,
        step: RunStep,
        record: StepRecord,
        error: Exception,
        attempt: int,
    ) -> Any:
        retryable = not isinstance(error, RetryableError) or error.is_retryable()
        delay_ms = self._config.step_policy.delay_for_attempt(attempt) if retryable else None
        if delay_ms is not None:
            token = new_token()
            logger.warning(
                f"{step} of run {ctx.run_id} failed on attempt {attempt}, "
                f"retrying in {delay_ms}ms: {error}"
            )
            await self.publish(
                ctx,
                [
                    continuation_message(
                        ctx.run_id,
                        ctx.url,
                        token,
                        ctx.ledger.records(),
                        Delivery(DeliveryType.RETRY, step.name, step.occurrence),
                        delay=delay_ms / 1000,
                    )
                ],
            )
            record.attempts = await self._store.record_attempt(
                ctx.run_id, step.name, step.occurrence, owner=token
            )
            record.owner = token
            ctx.ledger.put(record)
            raise self._suspend(ctx, SuspendKind.RETRY, step)

        failure = FailureContext.from_exception(error, step_name=step.name)
        logger.error(f"{step} of run {ctx.run_id} failed after {attempt} attempt(s): {error}")
        completed = await self._store.complete_step(
            ctx.run_id,
            step.name,
            step.occurrence,
            StepStatus.FAILED,
            error=failure.to_json(),
            completed_at=self._clock.now(),
            attempts=attempt,
        )
        if not completed:
            return await self._settled(ctx, step)
        record.status = StepStatus.FAILED
        record.error = failure.to_json()
        record.attempts = attempt
        ctx.ledger.put(record)
        raise StepFailedError(step.name, step.occurrence, failure) from error

    async def execute_notify(
        self, ctx: WorkflowContext, step: NotifyStep, record: StepRecord
    ) -> Any:
        results = await notify_waiters(
            self._store, self._scheduler, step.event_id, step.event_data
        )
        result = encode_value([r.to_dict() for r in results])
        completed = await self._store.complete_step(
            ctx.run_id,
            step.name,
            step.occurrence,
            StepStatus.SUCCEEDED,
            result=result,
            completed_at=self._clock.now(),
            attempts=record.attempts + 1,
        )
        if not completed:
            return await self._settled(ctx, step)
        record.status = StepStatus.SUCCEEDED
        record.result = result
        ctx.ledger.put(record)
        return step.decode(result)

    async def _settled(self, ctx: WorkflowContext, step: Step) -> Any:
        """Answer from the record another invocation completed first."""
        stored = await self._store.get_step(ctx.run_id, step.name, step.occurrence)
        if stored is None or not stored.is_terminal:
            raise self._suspend(ctx, SuspendKind.IN_FLIGHT, step)
        ctx.ledger.put(stored)
        if stored.status is StepStatus.FAILED:
            raise StepFailedError(
                step.name, step.occurrence, FailureContext.from_json(stored.error or "{}")
            )
        return step.decode(stored.result)

    # =========================================================================
    # Parallel batches
    # =========================================================================

    async def launch(self, ctx: WorkflowContext, members: list[tuple[Step, StepRecord]]) -> None:
        """
        Publish the messages of parallel members in one batch.

        Inline members get a PLAN continuation owned by their plan token.
        Asynchronous members get their usual message.
        """
        messages: list[Message] = []
        for step, record in members:
            if step.kind.resolves_inline:
                messages.append(
                    continuation_message(
                        ctx.run_id,
                        ctx.url,
                        record.owner or plan_token(ctx.token, step.key),
                        ctx.ledger.records(),
                        Delivery(DeliveryType.PLAN, step.name, step.occurrence),
                    )
                )
            else:
                messages.extend(await self._prepare(ctx, step, record))
        self._trace(f"Run {ctx.run_id} launching {len(messages)} parallel message(s)")
        await self.publish(ctx, messages)
