"""Step Ledger: the ordered log of a run's steps, as seen by one invocation.

The durable copy lives in the ExecutionLog. Every invocation loads it,
merges the snapshot and delivery its message carries, and then keeps this
in-memory view up to date as its own steps change.

Merge rules (shared by every writer):
    - a record that is not in the store yet is inserted (insert-if-absent)
    - a terminal record completes a PENDING one (complete-if-pending)
    - anything else is a no-op

Both rules are idempotent and writes to distinct records are independent,
so snapshots and deliveries can be merged in any order and any number of
times with the same end state.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from typing import TYPE_CHECKING, Any

from pyresume.models import StepKey, StepRecord

if TYPE_CHECKING:
    from pyresume.storage.base import ExecutionLog

logger = logging.getLogger(__name__)


class StepLedger:
    """In-memory view of one run's StepRecords keyed by (step_name, occurrence)."""

    def __init__(self, run_id: str, records: Iterable[StepRecord] = ()):
        self.run_id = run_id
        self._records: dict[StepKey, StepRecord] = {}
        for record in records:
            self.put(record)

    def get(self, key: StepKey) -> StepRecord | None:
        return self._records.get(key)

    def put(self, record: StepRecord) -> None:
        if record.run_id != self.run_id:
            raise ValueError(
                f"StepRecord for run {record.run_id!r} added to ledger of run {self.run_id!r}"
            )
        self._records[record.key] = record

    def records(self) -> list[StepRecord]:
        """Records in ledger order (seq, then insertion order for unsequenced records)."""
        indexed = list(enumerate(self._records.values()))
        indexed.sort(key=lambda item: (item[1].seq < 0, item[1].seq, item[0]))
        return [record for _, record in indexed]

    def batch(self, batch_id: str) -> list[StepRecord]:
        return [r for r in self.records() if r.batch == batch_id]

    def snapshot(self) -> list[dict[str, Any]]:
        return [record.to_dict() for record in self.records()]

    @classmethod
    def from_snapshot(cls, run_id: str, data: Iterable[dict[str, Any]]) -> StepLedger:
        return cls(run_id, (StepRecord.from_dict(item) for item in data))

    def __contains__(self, key: object) -> bool:
        return key in self._records

    def __iter__(self) -> Iterator[StepRecord]:
        return iter(self.records())

    def __len__(self) -> int:
        return len(self._records)

    def __repr__(self) -> str:
        return f"StepLedger(run_id={self.run_id!r}, steps={len(self)})"


async def merge_record(store: ExecutionLog, record: StepRecord) -> bool:
    """
    Merge one record into the store.

    Returns:
        True if the store changed
    """
    inserted = await store.insert_step(record)
    if inserted or not record.is_terminal:
        return inserted
    return await store.complete_step(
        record.run_id,
        record.step_name,
        record.occurrence,
        record.status,
        result=record.result,
        error=record.error,
        completed_at=record.completed_at,
        attempts=record.attempts,
    )


async def merge_records(store: ExecutionLog, records: Iterable[StepRecord]) -> int:
    """Merge a ledger snapshot into the store, returning how many records changed."""
    changed = 0
    for record in records:
        if await merge_record(store, record):
            changed += 1
    if changed:
        logger.debug(f"Merged {changed} ledger record(s) into the store")
    return changed
