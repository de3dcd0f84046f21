"""
WorkflowRun is the durable record of one end-to-end workflow execution.

A run is created by the first invocation of the workflow endpoint and is
owned by the engine until it reaches a terminal status. After the
configured retention it may be removed by ExecutionLog.cleanup_completed().
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pyresume.models.serialization import b64decode, b64encode, dt_from_str, dt_to_str
from pyresume.models.status import RunStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class WorkflowRun:
    """
    One execution of a workflow definition.

    Design: Value Object
        A snapshot of the run row. Storage backends return fresh copies,
        mutating one does not change the stored run.
    """

    run_id: str
    """Opaque unique run identifier (``wfr_`` prefix when generated)."""

    url: str
    """Self-invocation URL of the workflow endpoint."""

    initial_payload: bytes = b""
    """Raw body of the triggering request."""

    status: RunStatus = RunStatus.RUNNING
    """Current lifecycle status."""

    created_at: datetime = field(default_factory=_utcnow)
    """When the first invocation created this run."""

    updated_at: datetime = field(default_factory=_utcnow)
    """When the run row last changed."""

    attempts: int = 0
    """Run-level retries used for errors raised outside of steps."""

    result: bytes | None = None
    """JSON-encoded return value of the workflow, set on SUCCEEDED."""

    error: str | None = None
    """Failure description, set when the run fails."""

    failure_response: bytes | None = None
    """JSON-encoded return value of the failure function, if one ran."""

    @property
    def payload(self) -> Any:
        """
        The trigger payload in parsed form.

        Returns the decoded JSON value when the body is JSON, the decoded
        text otherwise, and None for an empty body.
        """
        if not self.initial_payload:
            return None
        text = self.initial_payload.decode("utf-8", errors="replace")
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "url": self.url,
            "initialPayload": b64encode(self.initial_payload),
            "status": self.status.value,
            "createdAt": dt_to_str(self.created_at),
            "updatedAt": dt_to_str(self.updated_at),
            "attempts": self.attempts,
            "result": b64encode(self.result),
            "error": self.error,
            "failureResponse": b64encode(self.failure_response),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkflowRun":
        return cls(
            run_id=data["runId"],
            url=data["url"],
            initial_payload=b64decode(data.get("initialPayload")) or b"",
            status=RunStatus(data["status"]),
            created_at=dt_from_str(data["createdAt"]),
            updated_at=dt_from_str(data["updatedAt"]),
            attempts=data.get("attempts", 0),
            result=b64decode(data.get("result")),
            error=data.get("error"),
            failure_response=b64decode(data.get("failureResponse")),
        )

    def __repr__(self) -> str:
        return (
            f"WorkflowRun(run_id={self.run_id!r}, status={self.status}, "
            f"attempts={self.attempts})"
        )
