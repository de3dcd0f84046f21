"""Values returned to workflow code by CALL and WAIT_FOR_EVENT steps."""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class CallResponse:
    """Response of a third-party HTTP call made through the scheduler."""

    status: int
    header: dict[str, list[str]] = field(default_factory=dict)
    body: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "header": self.header, "body": self.body}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CallResponse":
        return cls(
            status=int(data["status"]),
            header={k: list(v) for k, v in (data.get("header") or {}).items()},
            body=data.get("body", ""),
        )


@dataclass(frozen=True)
class WaitEventResult:
    """
    Result of ``ctx.wait_for_event()``.

    Attributes:
        event_data: Payload of the matching notify, None on timeout
        timeout: True if the wait expired before any notify arrived
    """

    event_data: Any = None
    timeout: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"eventData": self.event_data, "timeout": self.timeout}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WaitEventResult":
        return cls(event_data=data.get("eventData"), timeout=bool(data.get("timeout", False)))
