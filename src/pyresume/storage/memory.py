"""In-memory storage implementation for pyresume.

Design Pattern: Adapter Pattern
InMemoryExecutionLog adapts in-memory dictionaries to ExecutionLog interface.

Instance is immediately usable after __init__.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

from pyresume.core.clock import Clock, SystemClock
from pyresume.models import (
    RunStatus,
    StepRecord,
    StepStatus,
    Waiter,
    WaiterStatus,
    WorkflowRun,
)
from pyresume.storage.base import ExecutionLog, StorageError, check_run_fields


class InMemoryExecutionLog(ExecutionLog):
    """In-memory storage for testing.

    Can be substituted for SqliteExecutionLog without changing client code.

    Usage:
        storage = InMemoryExecutionLog()
        await storage.create_run(run)

    Timestamps come from ``clock``; pass the engine's clock when
    simulating time.
    """

    def __init__(self, clock: Clock | None = None):
        self.clock = clock or SystemClock()

        # Storage: {run_id: WorkflowRun}
        self._runs: dict[str, WorkflowRun] = {}

        # Storage: {run_id: {(step_name, occurrence): StepRecord}}
        self._steps: dict[str, dict[tuple[str, int], StepRecord]] = {}

        # Storage: {(run_id, event_id): Waiter}
        self._waiters: dict[tuple[str, str], Waiter] = {}

        # Storage: {message_id: run_id}
        self._processed: dict[str, str | None] = {}

        # Lock makes every compare-and-set atomic
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        """Return string representation of storage instance."""
        return "InMemoryExecutionLog"

    # ------------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------------

    async def create_run(self, run: WorkflowRun) -> bool:
        async with self._lock:
            if run.run_id in self._runs:
                return False
            self._runs[run.run_id] = replace(run)
            self._steps.setdefault(run.run_id, {})
            return True

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        async with self._lock:
            run = self._runs.get(run_id)
            return replace(run) if run is not None else None

    async def transition_run(
        self,
        run_id: str,
        expected: Iterable[RunStatus],
        to: RunStatus,
        **fields: Any,
    ) -> bool:
        check_run_fields(fields)
        expected = set(expected)
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None or run.status not in expected:
                return False
            if not run.status.can_transition_to(to):
                return False
            self._runs[run_id] = replace(
                run, status=to, updated_at=self.clock.now(), **fields
            )
            return True

    async def increment_run_attempts(self, run_id: str) -> int:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise StorageError(f"Run not found: {run_id}")
            run.attempts += 1
            run.updated_at = self.clock.now()
            return run.attempts

    # ------------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------------

    async def get_steps(self, run_id: str) -> list[StepRecord]:
        async with self._lock:
            records = self._steps.get(run_id, {}).values()
            return [replace(r) for r in sorted(records, key=lambda r: r.seq)]

    async def get_step(self, run_id: str, step_name: str, occurrence: int) -> StepRecord | None:
        async with self._lock:
            record = self._steps.get(run_id, {}).get((step_name, occurrence))
            return replace(record) if record is not None else None

    async def insert_step(self, record: StepRecord) -> bool:
        async with self._lock:
            steps = self._steps.setdefault(record.run_id, {})
            if record.key in steps:
                return False
            steps[record.key] = replace(record, seq=len(steps))
            return True

    async def complete_step(
        self,
        run_id: str,
        step_name: str,
        occurrence: int,
        status: StepStatus,
        result: bytes | None = None,
        error: str | None = None,
        completed_at: datetime | None = None,
        attempts: int | None = None,
    ) -> bool:
        if not status.is_terminal:
            raise StorageError("complete_step requires SUCCEEDED or FAILED")
        async with self._lock:
            record = self._steps.get(run_id, {}).get((step_name, occurrence))
            if record is None or record.is_terminal:
                return False
            record.status = status
            record.result = result if status is StepStatus.SUCCEEDED else None
            record.error = error if status is StepStatus.FAILED else None
            record.completed_at = completed_at or self.clock.now()
            if attempts is not None:
                record.attempts = max(record.attempts, attempts)
            return True

    async def record_attempt(
        self, run_id: str, step_name: str, occurrence: int, owner: str | None
    ) -> int:
        async with self._lock:
            record = self._steps.get(run_id, {}).get((step_name, occurrence))
            if record is None:
                raise StorageError(f"Step not found: {run_id}/{step_name}#{occurrence}")
            if record.is_terminal:
                raise StorageError(f"Step already {record.status}: {step_name}#{occurrence}")
            record.attempts += 1
            record.owner = owner
            return record.attempts

    # ------------------------------------------------------------------------
    # Waiters
    # ------------------------------------------------------------------------

    async def put_waiter(self, waiter: Waiter) -> None:
        async with self._lock:
            self._waiters[(waiter.run_id, waiter.event_id)] = replace(waiter)

    async def get_waiter(self, run_id: str, event_id: str) -> Waiter | None:
        async with self._lock:
            waiter = self._waiters.get((run_id, event_id))
            return replace(waiter) if waiter is not None else None

    async def find_waiters(
        self, event_id: str, status: WaiterStatus | None = WaiterStatus.PENDING
    ) -> list[Waiter]:
        async with self._lock:
            found = [
                replace(w)
                for w in self._waiters.values()
                if w.event_id == event_id and (status is None or w.status is status)
            ]
        found.sort(key=lambda w: w.created_at)
        return found

    async def transition_waiter(
        self,
        run_id: str,
        event_id: str,
        step_name: str,
        occurrence: int,
        expected: WaiterStatus,
        to: WaiterStatus,
        event_data: Any = None,
    ) -> bool:
        async with self._lock:
            waiter = self._waiters.get((run_id, event_id))
            if waiter is None or waiter.step_key != (step_name, occurrence):
                return False
            if waiter.status is not expected:
                return False
            waiter.status = to
            waiter.event_data = event_data
            return True

    # ------------------------------------------------------------------------
    # Message dedupe
    # ------------------------------------------------------------------------

    async def is_message_processed(self, message_id: str) -> bool:
        async with self._lock:
            return message_id in self._processed

    async def mark_message_processed(self, message_id: str, run_id: str | None = None) -> None:
        async with self._lock:
            self._processed.setdefault(message_id, run_id)

    # ------------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------------

    async def cleanup_completed(self, older_than: timedelta, now: datetime) -> int:
        cutoff = now - older_than
        async with self._lock:
            expired = [
                run_id
                for run_id, run in self._runs.items()
                if run.status.is_terminal and run.updated_at < cutoff
            ]
            for run_id in expired:
                del self._runs[run_id]
                self._steps.pop(run_id, None)
            expired_set = set(expired)
            self._waiters = {
                key: w for key, w in self._waiters.items() if w.run_id not in expired_set
            }
            self._processed = {
                mid: rid for mid, rid in self._processed.items() if rid not in expired_set
            }
            return len(expired)

    async def reset(self) -> None:
        async with self._lock:
            self._runs.clear()
            self._steps.clear()
            self._waiters.clear()
            self._processed.clear()

    async def close(self) -> None:
        pass
