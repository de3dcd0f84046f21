"""
Step variants created by WorkflowContext.

Design: Closed tagged variants
    One class per StepKind. A step is a lazy description of work: creating
    it only reserves its (name, occurrence) identity. Awaiting it hands it
    to the Replay Engine, which answers from the ledger or submits it.

    result = await ctx.run("charge", charge_card)

Each variant knows how to build its PENDING StepRecord and how to decode
its stored result. What to do with a new step of each kind is decided by
the submitter with an explicit ``match`` over these classes.
"""

from __future__ import annotations

import inspect
from abc import ABC
from collections.abc import Awaitable, Callable, Generator
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, ClassVar, Generic, TypeVar

from pyresume.core.codec import decode_value
from pyresume.models import (
    CallResponse,
    NotifyResult,
    StepKey,
    StepKind,
    StepRecord,
    Waiter,
    WaitEventResult,
)

if TYPE_CHECKING:
    from pyresume.core.context import WorkflowContext

T = TypeVar("T")


class Step(ABC, Generic[T]):
    """Base class of all step variants."""

    kind: ClassVar[StepKind]

    def __init__(self, ctx: WorkflowContext, name: str, occurrence: int):
        self._ctx = ctx
        self.name = name
        self.occurrence = occurrence

    @property
    def key(self) -> StepKey:
        return (self.name, self.occurrence)

    def new_record(self, run_id: str, now: datetime) -> StepRecord:
        """PENDING record for a newly reached step."""
        return StepRecord(
            run_id=run_id,
            step_name=self.name,
            occurrence=self.occurrence,
            kind=self.kind,
            scheduled_at=now,
        )

    def decode(self, data: bytes | None) -> T:
        return decode_value(data)

    def __await__(self) -> Generator[Any, None, T]:
        return self._ctx._resolve(self).__await__()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}#{self.occurrence})"


class RunStep(Step[T]):
    """Execute a local function once and memoize its JSON result."""

    kind = StepKind.RUN

    def __init__(
        self,
        ctx: WorkflowContext,
        name: str,
        occurrence: int,
        fn: Callable[[], Awaitable[T] | T],
    ):
        super().__init__(ctx, name, occurrence)
        self.fn = fn

    async def execute(self) -> T:
        value = self.fn()
        if inspect.isawaitable(value):
            value = await value
        return value


class SleepStep(Step[None]):
    """Pause the run for a duration."""

    kind = StepKind.SLEEP

    def __init__(self, ctx: WorkflowContext, name: str, occurrence: int, duration: timedelta):
        super().__init__(ctx, name, occurrence)
        if duration < timedelta(0):
            raise ValueError(f"Sleep duration must be non-negative, got {duration}")
        self.duration = duration

    def wake_at(self, now: datetime) -> datetime:
        return now + self.duration

    def new_record(self, run_id: str, now: datetime) -> StepRecord:
        record = super().new_record(run_id, now)
        record.wake_at = self.wake_at(now)
        return record

    def decode(self, data: bytes | None) -> None:
        return None


class SleepUntilStep(SleepStep):
    """Pause the run until an absolute time."""

    kind = StepKind.SLEEP_UNTIL

    def __init__(self, ctx: WorkflowContext, name: str, occurrence: int, when: datetime):
        Step.__init__(self, ctx, name, occurrence)
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        self.when = when

    def wake_at(self, now: datetime) -> datetime:
        return self.when


class CallStep(Step[CallResponse]):
    """Third-party HTTP request proxied through the Durable Scheduler."""

    kind = StepKind.CALL

    def __init__(
        self,
        ctx: WorkflowContext,
        name: str,
        occurrence: int,
        url: str,
        method: str = "POST",
        body: Any = None,
        headers: dict[str, str] | None = None,
        retries: int = 0,
    ):
        super().__init__(ctx, name, occurrence)
        if retries < 0:
            raise ValueError(f"retries must be non-negative, got {retries}")
        self.url = url
        self.method = method.upper()
        self.body = body
        self.headers = dict(headers or {})
        self.retries = retries

    def decode(self, data: bytes | None) -> CallResponse:
        return CallResponse.from_dict(decode_value(data))


class WaitForEventStep(Step[WaitEventResult]):
    """Suspend until a matching notify arrives or the timeout expires."""

    kind = StepKind.WAIT_FOR_EVENT

    def __init__(
        self,
        ctx: WorkflowContext,
        name: str,
        occurrence: int,
        event_id: str,
        timeout: timedelta,
    ):
        super().__init__(ctx, name, occurrence)
        if timeout <= timedelta(0):
            raise ValueError(f"Wait timeout must be positive, got {timeout}")
        self.event_id = event_id
        self.timeout = timeout

    def new_record(self, run_id: str, now: datetime) -> StepRecord:
        record = super().new_record(run_id, now)
        record.wake_at = now + self.timeout
        record.event_id = self.event_id
        return record

    def decode(self, data: bytes | None) -> WaitEventResult:
        return WaitEventResult.from_dict(decode_value(data))


class NotifyStep(Step[list[NotifyResult]]):
    """Notify every waiter of an event and memoize the delivery report."""

    kind = StepKind.NOTIFY

    def __init__(
        self,
        ctx: WorkflowContext,
        name: str,
        occurrence: int,
        event_id: str,
        event_data: Any = None,
    ):
        super().__init__(ctx, name, occurrence)
        self.event_id = event_id
        self.event_data = event_data

    def decode(self, data: bytes | None) -> list[NotifyResult]:
        return [
            NotifyResult(
                waiter=Waiter.from_dict(item["waiter"]),
                message_id=item.get("messageId"),
                error=item.get("error"),
            )
            for item in decode_value(data) or []
        ]


