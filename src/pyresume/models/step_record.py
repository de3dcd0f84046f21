"""
StepRecord is one entry of a run's Step Ledger.

Identity is (run_id, step_name, occurrence). The occurrence index counts
earlier uses of the same step name in the run, so a loop that reuses a
name still produces distinct records.

Invariant: once a record is SUCCEEDED or FAILED it never changes. A
SUCCEEDED result is returned byte for byte on every later replay.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pyresume.models.serialization import b64decode, b64encode, dt_from_str, dt_to_str
from pyresume.models.status import StepKind, StepStatus

StepKey = tuple[str, int]
"""(step_name, occurrence) - the identity of a step within one run."""


@dataclass
class StepRecord:
    """
    A single step in the ledger.

    Design: Tagged record
        ``kind`` is the closed tag. Which optional fields are meaningful
        depends on it: ``wake_at`` for SLEEP, SLEEP_UNTIL and
        WAIT_FOR_EVENT, ``event_id`` for WAIT_FOR_EVENT, ``owner`` for RUN.
    """

    run_id: str
    step_name: str
    occurrence: int
    kind: StepKind

    status: StepStatus = StepStatus.PENDING

    result: bytes | None = None
    """Encoded step result, present iff SUCCEEDED."""

    error: str | None = None
    """FailureContext JSON, present iff FAILED."""

    attempts: int = 0
    """Executions of the step body (RUN) or deliveries (CALL) so far."""

    seq: int = -1
    """Ledger position, assigned by storage on first insert."""

    batch: str | None = None
    """Parallel batch id when launched through WorkflowContext.parallel()."""

    owner: str | None = None
    """Invocation token allowed to execute a PENDING RUN body."""

    wake_at: datetime | None = None
    """Absolute wake-up or timeout time for sleep and wait steps."""

    event_id: str | None = None
    """Event identifier a WAIT_FOR_EVENT step listens on."""

    scheduled_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None

    @property
    def key(self) -> StepKey:
        return (self.step_name, self.occurrence)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        """JSON form used in the continuation envelope and the Redis backend."""
        return {
            "runId": self.run_id,
            "stepName": self.step_name,
            "occurrence": self.occurrence,
            "kind": self.kind.value,
            "status": self.status.value,
            "result": b64encode(self.result),
            "error": self.error,
            "attempts": self.attempts,
            "seq": self.seq,
            "batch": self.batch,
            "owner": self.owner,
            "wakeAt": dt_to_str(self.wake_at),
            "eventId": self.event_id,
            "scheduledAt": dt_to_str(self.scheduled_at),
            "completedAt": dt_to_str(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepRecord":
        """
        Build a record from its JSON form.

        Raises:
            KeyError: If an identity field is missing
            ValueError: If kind, status, a timestamp or the result encoding is invalid
        """
        record = cls(
            run_id=data["runId"],
            step_name=data["stepName"],
            occurrence=int(data["occurrence"]),
            kind=StepKind(data["kind"]),
            status=StepStatus(data.get("status", StepStatus.PENDING.value)),
            result=b64decode(data.get("result")),
            error=data.get("error"),
            attempts=int(data.get("attempts", 0)),
            seq=int(data.get("seq", -1)),
            batch=data.get("batch"),
            owner=data.get("owner"),
            wake_at=dt_from_str(data.get("wakeAt")),
            event_id=data.get("eventId"),
            completed_at=dt_from_str(data.get("completedAt")),
        )
        scheduled_at = dt_from_str(data.get("scheduledAt"))
        if scheduled_at is not None:
            record.scheduled_at = scheduled_at
        return record

    def __repr__(self) -> str:
        return (
            f"StepRecord({self.kind}({self.step_name!r}#{self.occurrence}), "
            f"status={self.status}, attempts={self.attempts}, seq={self.seq})"
        )
