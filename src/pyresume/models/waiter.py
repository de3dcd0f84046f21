"""Waiter and NotifyResult: the two halves of waitForEvent / notify."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pyresume.models.serialization import dt_from_str, dt_to_str
from pyresume.models.status import WaiterStatus


@dataclass
class Waiter:
    """
    A pending waitForEvent registration.

    Identity is (run_id, event_id). The waiter also remembers which step
    created it, so that status changes can be scoped to that step: a late
    timeout for an earlier wait on the same event cannot resolve a newer
    one.
    """

    run_id: str
    event_id: str
    step_name: str
    occurrence: int
    url: str
    """Workflow URL to wake up when the waiter resolves."""

    timeout_at: datetime
    status: WaiterStatus = WaiterStatus.PENDING
    event_data: Any = None
    """JSON value supplied by the matching notify call."""

    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def step_key(self) -> tuple[str, int]:
        return (self.step_name, self.occurrence)

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "eventId": self.event_id,
            "stepName": self.step_name,
            "occurrence": self.occurrence,
            "url": self.url,
            "timeoutAt": dt_to_str(self.timeout_at),
            "status": self.status.value,
            "eventData": self.event_data,
            "createdAt": dt_to_str(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Waiter":
        return cls(
            run_id=data["runId"],
            event_id=data["eventId"],
            step_name=data["stepName"],
            occurrence=int(data["occurrence"]),
            url=data["url"],
            timeout_at=dt_from_str(data["timeoutAt"]),
            status=WaiterStatus(data["status"]),
            event_data=data.get("eventData"),
            created_at=dt_from_str(data["createdAt"]),
        )


@dataclass(frozen=True)
class NotifyResult:
    """
    Outcome of delivering one notify to one matched waiter.

    Attributes:
        waiter: The matched waiter, as it was when notify claimed it
        message_id: Scheduler message id of the wake-up, None if publishing failed
        error: Publish error text, None on success
    """

    waiter: Waiter
    message_id: str | None = None
    error: str | None = None

    @property
    def delivered(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "waiter": self.waiter.to_dict(),
            "messageId": self.message_id,
            "error": self.error,
        }
