"""
In-process Durable Scheduler for tests and local development.

InMemoryScheduler keeps messages in a list and delivers them when its
clock says they are due. Endpoints registered with register() are called
in-process; any other URL is requested over HTTP with httpx. Time only
moves through the shared Clock, so a test drives a whole run with
advance() and run_until_idle() instead of sleeping.

Delivery semantics follow a hosted scheduler:
- non-2xx responses and transport errors are retried with exponential backoff
- after the last retry the message goes to the dead-letter list and, for a
  proxied call, to its failure callback
- a proxied call's 2xx response is posted to its callback URL
"""

from __future__ import annotations

import itertools
import logging
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import httpx
from uuid_extensions import uuid7

from pyresume.core.clock import Clock, ManualClock
from pyresume.models import RetryPolicy
from pyresume.protocol import (
    HEADER_MESSAGE_ID,
    HEADER_RETRIED,
    HEADER_SIGNATURE,
    WorkflowRequest,
    WorkflowResponse,
    callback_body,
)
from pyresume.receiver import sign
from pyresume.scheduler.base import DurableScheduler, Message, SchedulerError

logger = logging.getLogger(__name__)

Endpoint = Callable[[WorkflowRequest], Awaitable[WorkflowResponse]]

DEFAULT_MESSAGE_RETRIES = 3

DELIVERY_BACKOFF = RetryPolicy(
    max_attempts=DEFAULT_MESSAGE_RETRIES + 1,
    initial_delay_ms=1000,
    max_delay_ms=60000,
    backoff_multiplier=2.0,
)


@dataclass
class ScheduledMessage:
    message_id: str
    message: Message
    deliver_at: datetime
    retried: int = 0
    order: int = 0


@dataclass(frozen=True)
class DeliveryRecord:
    """One delivery attempt, kept in InMemoryScheduler.history."""

    message_id: str
    url: str
    status: int
    retried: int
    at: datetime


@dataclass(frozen=True)
class DeadLetter:
    """A message whose retries ran out."""

    message_id: str
    message: Message
    status: int
    body: bytes


class InMemoryScheduler(DurableScheduler):
    """
    Durable Scheduler simulation.

    Usage:
        clock = ManualClock()
        scheduler = InMemoryScheduler(clock)
        scheduler.register("https://app.test/workflow", engine)

        await client.trigger("https://app.test/workflow", {"userId": "u1"})
        await scheduler.run_until_idle()
    """

    def __init__(
        self,
        clock: Clock | None = None,
        http_client: httpx.AsyncClient | None = None,
        default_retries: int = DEFAULT_MESSAGE_RETRIES,
        retry_policy: RetryPolicy | None = None,
        signing_key: str | None = None,
    ):
        self.clock = clock or ManualClock()
        self._http_client = http_client
        self._owns_client = http_client is None
        self._default_retries = default_retries
        self._retry_policy = retry_policy or DELIVERY_BACKOFF
        self._signing_key = signing_key

        self._endpoints: dict[str, Endpoint] = {}
        self._pending: list[ScheduledMessage] = []
        self._sent: dict[str, ScheduledMessage] = {}
        self._order = itertools.count()

        self.history: list[DeliveryRecord] = []
        self.dead_letters: list[DeadLetter] = []
        self.deliveries: Counter[str] = Counter()
        """Delivery attempts per destination URL (duplicates included)."""

    def __repr__(self) -> str:
        return f"InMemoryScheduler(pending={len(self._pending)}, endpoints={len(self._endpoints)})"

    def register(self, url: str, endpoint: Any) -> None:
        """
        Route deliveries for ``url`` to an in-process endpoint.

        Args:
            url: Exact destination URL
            endpoint: Object with an async ``handle(WorkflowRequest)`` method
                (such as WorkflowEngine) or the coroutine function itself
        """
        handler = getattr(endpoint, "handle", endpoint)
        if not callable(handler):
            raise TypeError(f"Endpoint for {url} is not callable: {endpoint!r}")
        self._endpoints[url] = handler

    # ------------------------------------------------------------------------
    # DurableScheduler
    # ------------------------------------------------------------------------

    async def publish(self, message: Message) -> str:
        message_id = f"msg_{uuid7()}"
        self._pending.append(
            ScheduledMessage(
                message_id=message_id,
                message=message,
                deliver_at=self._first_delivery(message),
                order=next(self._order),
            )
        )
        logger.debug(f"Scheduled {message_id}: {message!r}")
        return message_id

    async def cancel(self, run_id: str) -> int:
        before = len(self._pending)
        self._pending = [p for p in self._pending if p.message.run_id != run_id]
        canceled = before - len(self._pending)
        if canceled:
            logger.info(f"Canceled {canceled} pending message(s) for run {run_id}")
        return canceled

    async def close(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    # ------------------------------------------------------------------------
    # Simulation controls
    # ------------------------------------------------------------------------

    @property
    def pending(self) -> list[ScheduledMessage]:
        """Undelivered messages, earliest first."""
        return sorted(self._pending, key=lambda p: (p.deliver_at, p.order))

    def next_delivery_at(self) -> datetime | None:
        pending = self.pending
        return pending[0].deliver_at if pending else None

    async def deliver_due(self) -> int:
        """
        Deliver every message that is due now.

        Messages published during these deliveries wait for the next call.

        Returns:
            Number of deliveries made
        """
        now = self.clock.now()
        due = [p for p in self.pending if p.deliver_at <= now]
        for scheduled in due:
            self._pending.remove(scheduled)
        for scheduled in due:
            await self._deliver(scheduled)
        return len(due)

    async def advance(self, seconds: float | timedelta) -> int:
        """Move the manual clock forward and deliver everything that became due."""
        if not isinstance(self.clock, ManualClock):
            raise SchedulerError("advance() requires a ManualClock")
        self.clock.advance(seconds)
        return await self.run_until_idle(advance_clock=False)

    async def run_until_idle(self, advance_clock: bool = True, max_deliveries: int = 10_000) -> int:
        """
        Deliver messages until none is left.

        Args:
            advance_clock: Jump a ManualClock to the next delivery time
                when nothing is due. False stops at the current time.
            max_deliveries: Guard against runs that never finish

        Returns:
            Number of deliveries made
        """
        total = 0
        while True:
            delivered = await self.deliver_due()
            total += delivered
            if total > max_deliveries:
                raise SchedulerError(f"Still delivering after {max_deliveries} messages")
            if delivered:
                continue
            next_at = self.next_delivery_at()
            if next_at is None or not advance_clock or not isinstance(self.clock, ManualClock):
                return total
            self.clock.set(next_at)

    async def redeliver(self, message_id: str) -> int:
        """
        Deliver an already delivered message again, as a duplicate.

        Returns:
            HTTP status of the duplicate delivery
        """
        scheduled = self._sent.get(message_id)
        if scheduled is None:
            raise SchedulerError(f"Message {message_id} was never delivered")
        return await self._deliver(scheduled, duplicate=True)

    def find(self, url: str | None = None, run_id: str | None = None) -> list[ScheduledMessage]:
        """Pending messages filtered by destination and run label."""
        return [
            p
            for p in self.pending
            if (url is None or p.message.url == url)
            and (run_id is None or p.message.run_id == run_id)
        ]

    # ------------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------------

    def _first_delivery(self, message: Message) -> datetime:
        now = self.clock.now()
        if message.not_before is not None:
            return max(now, message.not_before)
        if message.delay:
            return now + timedelta(seconds=message.delay)
        return now

    async def _deliver(self, scheduled: ScheduledMessage, duplicate: bool = False) -> int:
        message = scheduled.message
        headers = dict(message.headers)
        headers[HEADER_MESSAGE_ID] = scheduled.message_id
        headers[HEADER_RETRIED] = str(scheduled.retried)
        if self._signing_key is not None:
            headers[HEADER_SIGNATURE] = sign(
                self._signing_key, message.body, url=message.url, now=self.clock.now()
            )

        status, response_headers, response_body = await self._send(
            message.method, message.url, headers, message.body
        )
        self.deliveries[message.url] += 1
        self.history.append(
            DeliveryRecord(
                message_id=scheduled.message_id,
                url=message.url,
                status=status,
                retried=scheduled.retried,
                at=self.clock.now(),
            )
        )
        self._sent[scheduled.message_id] = scheduled
        logger.debug(f"Delivered {scheduled.message_id} to {message.url}: {status}")

        if duplicate:
            return status

        if 200 <= status < 300:
            if message.callback:
                await self._post_callback(
                    scheduled, message.callback, status, response_headers, response_body
                )
            return status

        retries = message.retries if message.retries is not None else self._default_retries
        if scheduled.retried < retries:
            policy = RetryPolicy.from_retries(retries, self._retry_policy)
            delay_ms = policy.delay_for_attempt(scheduled.retried + 1) or 0
            self._pending.append(
                ScheduledMessage(
                    message_id=scheduled.message_id,
                    message=message,
                    deliver_at=self.clock.now() + timedelta(milliseconds=delay_ms),
                    retried=scheduled.retried + 1,
                    order=next(self._order),
                )
            )
            return status

        if message.failure_callback:
            await self._post_callback(
                scheduled, message.failure_callback, status, response_headers, response_body
            )
        self.dead_letters.append(
            DeadLetter(
                message_id=scheduled.message_id,
                message=message,
                status=status,
                body=response_body,
            )
        )
        logger.warning(
            f"Message {scheduled.message_id} to {message.url} dead-lettered "
            f"after {scheduled.retried} retries (last status {status})"
        )
        return status

    async def _post_callback(
        self,
        scheduled: ScheduledMessage,
        url: str,
        status: int,
        headers: dict[str, list[str]],
        body: bytes,
    ) -> None:
        await self.publish(
            Message(
                url=url,
                body=callback_body(status, headers, body, scheduled.retried),
                headers=dict(scheduled.message.callback_headers),
                run_id=scheduled.message.run_id,
            )
        )

    async def _send(
        self, method: str, url: str, headers: dict[str, str], body: bytes
    ) -> tuple[int, dict[str, list[str]], bytes]:
        endpoint = self._endpoints.get(url)
        if endpoint is not None:
            try:
                response = await endpoint(WorkflowRequest(url, headers, body, method))
            except Exception:
                logger.exception(f"Endpoint {url} raised while handling a delivery")
                return 500, {}, b""
            return (
                response.status,
                {k: [v] for k, v in response.headers.items()},
                response.content(),
            )

        if self._http_client is None:
            self._http_client = httpx.AsyncClient()
        try:
            response = await self._http_client.request(method, url, headers=headers, content=body)
        except httpx.HTTPError as e:
            logger.warning(f"Delivery to {url} failed: {e}")
            return 502, {}, str(e).encode("utf-8")

        response_headers: dict[str, list[str]] = {}
        for name, value in response.headers.multi_items():
            response_headers.setdefault(name, []).append(value)
        return response.status_code, response_headers, response.content
