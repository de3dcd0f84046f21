"""
WorkflowEngine - the workflow endpoint.

One call to handle() is one invocation:

    1. parse and (optionally) verify the request
    2. drop duplicates of already processed scheduler messages
    3. load or create the run, merge the ledger snapshot and apply the
       message's delivery (sleep wake-up, wait timeout, notify, call result)
    4. replay the workflow and record what happened

The HTTP status tells the scheduler whether to redeliver: 2xx means the
message is done, anything else is retried. A suspension is a success: the
invocation did its part and published the next message.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

import xxhash
from uuid_extensions import uuid7

from pyresume.core.clock import Clock, SystemClock
from pyresume.core.codec import encode_value
from pyresume.core.config import WorkflowConfig
from pyresume.core.errors import (
    NonDeterminismError,
    RunNotFoundError,
    StepFailedError,
    WakeUpPendingError,
    WorkflowError,
)
from pyresume.core.ledger import merge_records
from pyresume.executor.failure import FailureHandler
from pyresume.executor.outcome import Completed, Suspended, SuspendKind
from pyresume.executor.replay import ReplayEngine, Workflow
from pyresume.executor.submitter import continuation_message, new_token
from pyresume.models import (
    FailureContext,
    RetryableError,
    RunStatus,
    StepKind,
    StepStatus,
    WaiterStatus,
    WaitEventResult,
    WorkflowRun,
)
from pyresume.protocol import (
    HEADER_SIGNATURE,
    CallbackPayload,
    Delivery,
    DeliveryType,
    ParsedRequest,
    RequestKind,
    WorkflowRequest,
    WorkflowResponse,
    parse_request,
    response_body,
)

if TYPE_CHECKING:
    from pyresume.receiver import Receiver
    from pyresume.scheduler.base import DurableScheduler
    from pyresume.storage.base import ExecutionLog

logger = logging.getLogger(__name__)

_ACTIVE = (RunStatus.RUNNING, RunStatus.WAITING)


def new_run_id() -> str:
    return f"wfr_{uuid7()}"


def message_token(message_id: str | None) -> str:
    """
    Invocation token for a trigger or callback message.

    Derived from the scheduler message id, so a redelivery of the same
    message owns the steps its first delivery left PENDING.
    """
    if not message_id:
        return new_token()
    digest = xxhash.xxh64(message_id.encode("utf-8")).hexdigest()
    return f"msg_{digest}"


class WorkflowEngine:
    """
    Serves one workflow definition.

    Usage:
        ```python
        async def onboarding(ctx: WorkflowContext):
            user = await ctx.run("create-user", lambda: create_user(ctx.payload))
            await ctx.sleep("cool-down", 60)
            return await ctx.run("send-email", lambda: send_email(user))

        engine = WorkflowEngine(onboarding, store, scheduler)
        response = await engine.handle(request)
        ```
    """

    def __init__(
        self,
        workflow: Workflow,
        store: ExecutionLog,
        scheduler: DurableScheduler,
        config: WorkflowConfig | None = None,
        clock: Clock | None = None,
        receiver: Receiver | None = None,
    ):
        self.workflow = workflow
        self.store = store
        self.scheduler = scheduler
        self.config = config or WorkflowConfig()
        self.clock = clock or SystemClock()
        self.receiver = receiver
        self.replay = ReplayEngine(workflow, store, scheduler, self.clock, self.config)
        self.failure_handler = FailureHandler(store, scheduler, self.config)

    def __repr__(self) -> str:
        name = getattr(self.workflow, "__name__", repr(self.workflow))
        return f"WorkflowEngine(workflow={name}, store={self.store!r})"

    def _trace(self, message: str) -> None:
        logger.log(self.config.trace_level, message)

    # =========================================================================
    # Request boundary
    # =========================================================================

    async def handle(self, request: WorkflowRequest) -> WorkflowResponse:
        """
        Handle one inbound request. Never raises: errors become responses.

        Status codes:
            200  handled (including duplicates, no-ops and suspensions)
            400  malformed request
            401  bad signature
            404  continuation for an unknown run
            500  infrastructure or failure-handler error (redelivered)
            503  wait timeout racing an in-flight notify (redelivered)
        """
        run_id: str | None = None
        try:
            parsed = parse_request(request)
            run_id = parsed.run_id
            if self.receiver is not None:
                # the scheduler signs the URL it was given, not the one behind a proxy
                self.receiver.verify(
                    request.header(HEADER_SIGNATURE),
                    request.body,
                    self.config.resolve_url(request.url),
                )

            if parsed.message_id and await self.store.is_message_processed(parsed.message_id):
                logger.info(f"Dropping duplicate message {parsed.message_id}")
                return WorkflowResponse(200, response_body(run_id, "DUPLICATE"))

            run_id, response = await self._dispatch(parsed, request)
        except WorkflowError as e:
            if e.http_status >= 500 and not isinstance(e, WakeUpPendingError):
                logger.exception(f"Invocation for run {run_id} failed")
            else:
                logger.warning(f"Rejected request for run {run_id}: {e}")
            body = {"error": type(e).__name__, "message": str(e)}
            if run_id is not None:
                body["runId"] = run_id
            return WorkflowResponse(e.http_status, body)
        except Exception as e:
            logger.exception(f"Unexpected error handling run {run_id}")
            body = {"error": type(e).__name__, "message": str(e)}
            if run_id is not None:
                body["runId"] = run_id
            return WorkflowResponse(500, body)

        if response.ok and parsed.message_id:
            await self.store.mark_message_processed(parsed.message_id, run_id)
        return response

    async def _dispatch(
        self, parsed: ParsedRequest, request: WorkflowRequest
    ) -> tuple[str, WorkflowResponse]:
        if parsed.kind is RequestKind.TRIGGER:
            run = WorkflowRun(
                run_id=parsed.run_id or new_run_id(),
                url=self.config.resolve_url(request.url),
                initial_payload=parsed.payload,
                created_at=self.clock.now(),
                updated_at=self.clock.now(),
            )
            if await self.store.create_run(run):
                logger.info(f"Started run {run.run_id} at {run.url}")
            else:
                run = await self._load(run.run_id)
                logger.info(f"Trigger for existing run {run.run_id}, replaying it")
            return run.run_id, await self._invoke(run, message_token(parsed.message_id))

        run = await self._load(parsed.run_id)
        if run.status.is_terminal:
            self._trace(f"Run {run.run_id} is {run.status}, ignoring {parsed.kind}")
            return run.run_id, WorkflowResponse(200, response_body(run.run_id, str(run.status)))

        if parsed.kind is RequestKind.CALLBACK:
            await self._apply_callback(run, parsed.callback)
            return run.run_id, await self._invoke(run, message_token(parsed.message_id))

        envelope = parsed.envelope
        await merge_records(self.store, envelope.steps)
        if envelope.delivery is not None:
            await self._apply_delivery(run, envelope.delivery)
        return run.run_id, await self._invoke(run, envelope.token)

    async def _load(self, run_id: str | None) -> WorkflowRun:
        if run_id is None:
            raise RunNotFoundError("<missing>")
        run = await self.store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    # =========================================================================
    # Deliveries
    # =========================================================================

    async def _apply_delivery(self, run: WorkflowRun, delivery: Delivery) -> None:
        """Complete the step a scheduled message was about. Stale deliveries change nothing."""
        key = delivery.step_key
        match delivery.type:
            case DeliveryType.SLEEP:
                completed = await self.store.complete_step(
                    run.run_id,
                    *key,
                    StepStatus.SUCCEEDED,
                    result=encode_value(None),
                    completed_at=self.clock.now(),
                )
                if completed:
                    self._trace(f"Run {run.run_id} woke up from {key[0]}#{key[1]}")
            case DeliveryType.TIMEOUT:
                won = await self.store.transition_waiter(
                    run.run_id,
                    delivery.event_id,
                    *key,
                    WaiterStatus.PENDING,
                    WaiterStatus.TIMED_OUT,
                )
                if won:
                    logger.info(
                        f"Wait for event {delivery.event_id} of run {run.run_id} timed out"
                    )
                    await self.store.complete_step(
                        run.run_id,
                        *key,
                        StepStatus.SUCCEEDED,
                        result=encode_value(WaitEventResult(None, timeout=True)),
                        completed_at=self.clock.now(),
                    )
                else:
                    await self._check_wake_up_landed(run, delivery)
            case DeliveryType.NOTIFY:
                waiter = await self.store.get_waiter(run.run_id, delivery.event_id)
                if (
                    waiter is not None
                    and waiter.step_key == key
                    and waiter.status is WaiterStatus.NOTIFIED
                ):
                    await self.store.complete_step(
                        run.run_id,
                        *key,
                        StepStatus.SUCCEEDED,
                        result=encode_value(WaitEventResult(waiter.event_data, timeout=False)),
                        completed_at=self.clock.now(),
                    )
            case DeliveryType.PLAN | DeliveryType.RETRY:
                # the envelope token owns the step, replay does the work
                pass

    async def _check_wake_up_landed(self, run: WorkflowRun, delivery: Delivery) -> None:
        """
        Refuse a lost timeout while a notify still holds the waiter.

        A NOTIFIED waiter whose step is still PENDING means the wake-up is
        in flight, or its publish failed and the waiter is about to go back
        to PENDING. Answering 503 makes the scheduler redeliver the timeout,
        so one of the two always completes the step.
        """
        waiter = await self.store.get_waiter(run.run_id, delivery.event_id)
        if waiter is None or waiter.step_key != delivery.step_key:
            return
        if waiter.status is not WaiterStatus.NOTIFIED:
            return
        record = await self.store.get_step(run.run_id, *delivery.step_key)
        if record is not None and record.status is StepStatus.PENDING:
            raise WakeUpPendingError(run.run_id, delivery.event_id)

    async def _apply_callback(self, run: WorkflowRun, callback: CallbackPayload) -> None:
        record = await self.store.get_step(run.run_id, callback.step_name, callback.occurrence)
        if record is None or record.kind is not StepKind.CALL:
            logger.warning(
                f"Callback for unknown call step {callback.step_name}#{callback.occurrence} "
                f"of run {run.run_id}"
            )
            return
        response = callback.response
        attempts = callback.retried + 1
        if response.ok:
            completed = await self.store.complete_step(
                run.run_id,
                callback.step_name,
                callback.occurrence,
                StepStatus.SUCCEEDED,
                result=encode_value(response),
                completed_at=self.clock.now(),
                attempts=attempts,
            )
        else:
            failure = FailureContext(
                status=response.status,
                header=response.header,
                body=response.body,
                step_name=callback.step_name,
            )
            completed = await self.store.complete_step(
                run.run_id,
                callback.step_name,
                callback.occurrence,
                StepStatus.FAILED,
                error=failure.to_json(),
                completed_at=self.clock.now(),
                attempts=attempts,
            )
        if completed:
            self._trace(
                f"Call {callback.step_name}#{callback.occurrence} of run {run.run_id} "
                f"answered {response.status}"
            )

    # =========================================================================
    # Invocation
    # =========================================================================

    async def _invoke(self, run: WorkflowRun, token: str) -> WorkflowResponse:
        run = await self._load(run.run_id)
        if run.status is RunStatus.FAILED_PENDING_CALLBACK:
            failure = (
                FailureContext.from_json(run.error)
                if run.error
                else FailureContext(status=500, body="run failed without a recorded error")
            )
            return await self._fail(run, failure)

        if not await self.store.transition_run(run.run_id, _ACTIVE, RunStatus.RUNNING):
            return WorkflowResponse(200, response_body(run.run_id, str(run.status)))

        outcome = await self.replay.run(run, token)
        match outcome:
            case Suspended(reason):
                self._trace(f"Run {run.run_id} suspended: {reason}")
                if reason.kind is not SuspendKind.CANCELED:
                    await self.store.transition_run(
                        run.run_id, (RunStatus.RUNNING,), RunStatus.WAITING
                    )
                    return WorkflowResponse(200, response_body(run.run_id, "WAITING", str(reason)))
                return WorkflowResponse(200, response_body(run.run_id, "CANCELED"))
            case Completed(result) if outcome.is_failure():
                return await self._on_workflow_error(run, result)
            case Completed(result):
                try:
                    encoded = encode_value(result)
                except TypeError as e:
                    return await self._on_workflow_error(run, e)
                if await self.store.transition_run(
                    run.run_id, _ACTIVE, RunStatus.SUCCEEDED, result=encoded
                ):
                    logger.info(f"Run {run.run_id} succeeded")
                current = await self._load(run.run_id)
                return WorkflowResponse(200, response_body(run.run_id, str(current.status)))

    async def _on_workflow_error(self, run: WorkflowRun, error: BaseException) -> WorkflowResponse:
        if isinstance(error, StepFailedError):
            return await self._fail(run, error.failure)

        failure = FailureContext.from_exception(error)
        retryable = not isinstance(error, NonDeterminismError) and (
            not isinstance(error, RetryableError) or error.is_retryable()
        )
        if retryable:
            attempts = await self.store.increment_run_attempts(run.run_id)
            delay_ms = self.config.step_policy.delay_for_attempt(attempts)
            if delay_ms is not None:
                logger.warning(
                    f"Run {run.run_id} raised {type(error).__name__} on attempt {attempts}, "
                    f"retrying in {delay_ms}ms: {error}"
                )
                steps = await self.store.get_steps(run.run_id)
                await self.scheduler.publish(
                    continuation_message(
                        run.run_id,
                        run.url,
                        new_token(),
                        steps,
                        Delivery(DeliveryType.RETRY),
                        delay=delay_ms / 1000,
                    )
                )
                await self.store.transition_run(run.run_id, (RunStatus.RUNNING,), RunStatus.WAITING)
                return WorkflowResponse(200, response_body(run.run_id, "RETRYING", str(error)))
        return await self._fail(run, failure)

    async def _fail(self, run: WorkflowRun, failure: FailureContext) -> WorkflowResponse:
        await self.failure_handler.handle(run, failure)
        current = await self._load(run.run_id)
        return WorkflowResponse(200, response_body(run.run_id, str(current.status), failure.message))

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def purge_expired(self, retention: timedelta | None = None) -> int:
        """
        Delete terminal runs older than the retention period.

        Returns:
            Number of runs removed (0 when no retention is configured)
        """
        retention = retention or self.config.retention
        if retention is None:
            return 0
        removed = await self.store.cleanup_completed(retention, self.clock.now())
        if removed:
            logger.info(f"Purged {removed} finished run(s) older than {retention}")
        return removed
