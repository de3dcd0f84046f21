"""
DurableScheduler - the at-least-once message scheduler the engine runs on.

Design Principle: Dependency Inversion (SOLID)
The engine only publishes Messages and cancels them by run label. Whether
they travel through a hosted scheduler (HttpScheduler) or an in-process
simulation (InMemoryScheduler) is the caller's choice.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime

from pyresume.core.errors import SchedulerError

__all__ = ["DurableScheduler", "Message", "SchedulerError"]


@dataclass
class Message:
    """
    One HTTP request for the scheduler to deliver.

    Attributes:
        url: Destination
        body: Raw request body
        method: HTTP method
        headers: Headers forwarded to the destination
        delay: Seconds to wait before the first delivery
        not_before: Absolute earliest delivery time (wins over delay)
        retries: Delivery retries on non-2xx or transport error (None: scheduler default)
        callback: URL that receives the destination's response
        callback_headers: Headers forwarded with the callback
        failure_callback: URL that receives the last response once retries are exhausted
        run_id: Label used by cancel(run_id)
    """

    url: str
    body: bytes = b""
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)
    delay: float | None = None
    not_before: datetime | None = None
    retries: int | None = None
    callback: str | None = None
    callback_headers: dict[str, str] = field(default_factory=dict)
    failure_callback: str | None = None
    run_id: str | None = None

    def __post_init__(self):
        if self.delay is not None and self.delay < 0:
            raise ValueError(f"delay must be non-negative, got {self.delay}")
        if self.retries is not None and self.retries < 0:
            raise ValueError(f"retries must be non-negative, got {self.retries}")

    def __repr__(self) -> str:
        return (
            f"Message({self.method} {self.url}, delay={self.delay}, "
            f"not_before={self.not_before}, run_id={self.run_id!r})"
        )


class DurableScheduler(ABC):
    """At-least-once delivery of HTTP messages, now or later."""

    @abstractmethod
    async def publish(self, message: Message) -> str:
        """
        Hand a message to the scheduler.

        Returns:
            The scheduler's message id

        Raises:
            SchedulerError: If the scheduler did not accept the message
        """
        pass

    async def batch_publish(self, messages: list[Message]) -> list[str]:
        """
        Publish several messages together.

        The default publishes one by one. Implementations with a batch
        endpoint override this.

        Returns:
            Message ids in the order of ``messages``
        """
        return [await self.publish(message) for message in messages]

    @abstractmethod
    async def cancel(self, run_id: str) -> int:
        """
        Cancel every not-yet-delivered message labeled with ``run_id``.

        Returns:
            Number of messages canceled
        """
        pass

    async def close(self) -> None:
        """Release HTTP connections (no-op by default)."""
        pass
