"""SQLite-backed storage implementation for pyresume.

Design Pattern: Adapter Pattern
SqliteExecutionLog adapts SQLite database to the ExecutionLog interface.

Complex database logic is isolated here, not scattered across the application.

Implementation details:
- aiosqlite for async operations
- WAL mode for concurrent reads
- INSERT OR IGNORE for insert-if-absent
- UPDATE ... WHERE status = ? for compare-and-set
- INTEGER timestamps (milliseconds since epoch, UTC)
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from pyresume.core.clock import Clock, SystemClock
from pyresume.models import (
    RunStatus,
    StepKind,
    StepRecord,
    StepStatus,
    Waiter,
    WaiterStatus,
    WorkflowRun,
)
from pyresume.storage.base import ExecutionLog, StorageError, check_run_fields

_STEP_COLUMNS = (
    "run_id, step_name, occurrence, kind, status, result, error, attempts, seq, "
    "batch, owner, wake_at, event_id, scheduled_at, completed_at"
)
_RUN_COLUMNS = (
    "run_id, url, initial_payload, status, created_at, updated_at, attempts, "
    "result, error, failure_response"
)
_WAITER_COLUMNS = (
    "run_id, event_id, step_name, occurrence, url, timeout_at, status, event_data, created_at"
)


def _to_ms(value: datetime | None) -> int | None:
    if value is None:
        return None
    return int(value.timestamp() * 1000)


def _from_ms(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)


class SqliteExecutionLog(ExecutionLog):
    """SQLite-backed durable storage.

    After __init__, the instance is not yet usable. Call connect() first.

    Usage:
        storage = SqliteExecutionLog("workflow.db")
        await storage.connect()
        try:
            await storage.create_run(run)
        finally:
            await storage.close()
    """

    def __init__(self, db_path: str, clock: Clock | None = None):
        """Initialize storage (connection not opened yet).

        Args:
            db_path: Path to SQLite database file
            clock: Source of updatedAt/completedAt stamps (defaults to the system clock)
        """
        self.db_path = db_path
        self.clock = clock or SystemClock()
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()  # Serialize read-modify-write sequences

    @classmethod
    async def in_memory(cls, clock: Clock | None = None) -> SqliteExecutionLog:
        """
        Create an in-memory SQLite storage for testing.

        Returns:
            Connected in-memory storage instance

        Example:
            storage = await SqliteExecutionLog.in_memory()
            # Ready to use immediately
        """
        instance = cls(":memory:", clock)
        await instance.connect()
        return instance

    def _now_ms(self) -> int:
        return _to_ms(self.clock.now())

    def __repr__(self) -> str:
        """Return string representation of storage instance."""
        if self.db_path == ":memory:":
            return "SqliteExecutionLog(in-memory)"
        return f"SqliteExecutionLog({self.db_path})"

    async def connect(self) -> None:
        """Open database connection and initialize schema.

        Pattern: Template Method
        Fixed initialization sequence:
        1. Open connection
        2. Enable WAL mode
        3. Create tables and indexes
        """
        if self._connection is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(
            self.db_path,
            timeout=5.0,
            isolation_level=None,  # Autocommit mode for better concurrency
        )

        # In-memory databases return "memory" and don't support WAL
        cursor = await self._connection.execute("PRAGMA journal_mode=WAL")
        result = await cursor.fetchone()
        await cursor.close()

        if result:
            mode = result[0].upper()
            if mode not in ("WAL", "MEMORY"):
                raise StorageError(f"Failed to enable WAL mode, got: {result[0]}")

        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA busy_timeout=5000")

        await self._create_schema()
        await self._connection.commit()

    async def _create_schema(self) -> None:
        """Create database tables and indexes.

        Schema design:
        - runs: one row per WorkflowRun
        - steps: the Step Ledger, PRIMARY KEY (run_id, step_name, occurrence)
        - waiters: PRIMARY KEY (run_id, event_id), indexed by event
        - processed_messages: scheduler message ids already handled
        - UPPERCASE status values for consistency
        """
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                url TEXT NOT NULL,
                initial_payload BLOB NOT NULL,
                status TEXT CHECK( status IN (
                    'RUNNING','WAITING','FAILED_PENDING_CALLBACK',
                    'SUCCEEDED','FAILED','CANCELED'
                ) ) NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                result BLOB,
                error TEXT,
                failure_response BLOB
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_runs_status_updated
            ON runs(status, updated_at)
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS steps (
                run_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                occurrence INTEGER NOT NULL,
                kind TEXT NOT NULL,
                status TEXT CHECK( status IN ('PENDING','SUCCEEDED','FAILED') ) NOT NULL,
                result BLOB,
                error TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                seq INTEGER NOT NULL,
                batch TEXT,
                owner TEXT,
                wake_at INTEGER,
                event_id TEXT,
                scheduled_at INTEGER NOT NULL,
                completed_at INTEGER,
                PRIMARY KEY (run_id, step_name, occurrence)
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_steps_run_seq
            ON steps(run_id, seq)
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS waiters (
                run_id TEXT NOT NULL,
                event_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                occurrence INTEGER NOT NULL,
                url TEXT NOT NULL,
                timeout_at INTEGER NOT NULL,
                status TEXT CHECK( status IN ('PENDING','NOTIFIED','TIMED_OUT') ) NOT NULL,
                event_data TEXT,
                created_at INTEGER NOT NULL,
                PRIMARY KEY (run_id, event_id)
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_waiters_event
            ON waiters(event_id, status, created_at)
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS processed_messages (
                message_id TEXT PRIMARY KEY,
                run_id TEXT,
                processed_at INTEGER NOT NULL
            )
        """)

    # ------------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------------

    async def create_run(self, run: WorkflowRun) -> bool:
        self._check_connected()

        cursor = await self._connection.execute(
            f"INSERT OR IGNORE INTO runs ({_RUN_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                run.run_id,
                run.url,
                run.initial_payload,
                run.status.value,
                _to_ms(run.created_at),
                _to_ms(run.updated_at),
                run.attempts,
                run.result,
                run.error,
                run.failure_response,
            ),
        )
        await self._connection.commit()
        return cursor.rowcount == 1

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Retrieve a run.

        Returns None when not found (not an error condition).
        """
        self._check_connected()

        cursor = await self._connection.execute(
            f"SELECT {_RUN_COLUMNS} FROM runs WHERE run_id = ?", (run_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_run(row)

    async def transition_run(
        self,
        run_id: str,
        expected: Iterable[RunStatus],
        to: RunStatus,
        **fields: Any,
    ) -> bool:
        self._check_connected()
        check_run_fields(fields)

        allowed = [s.value for s in expected if s.can_transition_to(to)]
        if not allowed:
            return False

        assignments = ["status = ?", "updated_at = ?"]
        params: list[Any] = [to.value, self._now_ms()]
        for name, value in fields.items():
            assignments.append(f"{name} = ?")
            params.append(value)

        placeholders = ", ".join("?" for _ in allowed)
        cursor = await self._connection.execute(
            f"UPDATE runs SET {', '.join(assignments)} "
            f"WHERE run_id = ? AND status IN ({placeholders})",
            (*params, run_id, *allowed),
        )
        await self._connection.commit()
        return cursor.rowcount == 1

    async def increment_run_attempts(self, run_id: str) -> int:
        self._check_connected()

        async with self._lock:
            cursor = await self._connection.execute(
                "UPDATE runs SET attempts = attempts + 1, updated_at = ? WHERE run_id = ?",
                (self._now_ms(), run_id),
            )
            await self._connection.commit()
            if cursor.rowcount == 0:
                raise StorageError(f"Run not found: {run_id}")

            cursor = await self._connection.execute(
                "SELECT attempts FROM runs WHERE run_id = ?", (run_id,)
            )
            row = await cursor.fetchone()
            return row[0]

    # ------------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------------

    async def get_steps(self, run_id: str) -> list[StepRecord]:
        self._check_connected()

        cursor = await self._connection.execute(
            f"SELECT {_STEP_COLUMNS} FROM steps WHERE run_id = ? ORDER BY seq", (run_id,)
        )
        rows = await cursor.fetchall()
        return [self._row_to_step(row) for row in rows]

    async def get_step(self, run_id: str, step_name: str, occurrence: int) -> StepRecord | None:
        self._check_connected()

        cursor = await self._connection.execute(
            f"SELECT {_STEP_COLUMNS} FROM steps "
            "WHERE run_id = ? AND step_name = ? AND occurrence = ?",
            (run_id, step_name, occurrence),
        )
        row = await cursor.fetchone()
        return self._row_to_step(row) if row is not None else None

    async def insert_step(self, record: StepRecord) -> bool:
        """Insert a step if absent, assigning the next seq of the run."""
        self._check_connected()

        async with self._lock:
            cursor = await self._connection.execute(
                f"""
                INSERT OR IGNORE INTO steps ({_STEP_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?,
                        (SELECT COALESCE(MAX(seq), -1) + 1 FROM steps WHERE run_id = ?),
                        ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.run_id,
                    record.step_name,
                    record.occurrence,
                    record.kind.value,
                    record.status.value,
                    record.result,
                    record.error,
                    record.attempts,
                    record.run_id,
                    record.batch,
                    record.owner,
                    _to_ms(record.wake_at),
                    record.event_id,
                    _to_ms(record.scheduled_at),
                    _to_ms(record.completed_at),
                ),
            )
            await self._connection.commit()
            return cursor.rowcount == 1

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
        self._check_connected()
        if not status.is_terminal:
            raise StorageError("complete_step requires SUCCEEDED or FAILED")

        cursor = await self._connection.execute(
            """
            UPDATE steps
            SET status = ?, result = ?, error = ?, completed_at = ?,
                attempts = MAX(attempts, COALESCE(?, attempts))
            WHERE run_id = ? AND step_name = ? AND occurrence = ? AND status = 'PENDING'
            """,
            (
                status.value,
                result if status is StepStatus.SUCCEEDED else None,
                error if status is StepStatus.FAILED else None,
                _to_ms(completed_at) if completed_at is not None else self._now_ms(),
                attempts,
                run_id,
                step_name,
                occurrence,
            ),
        )
        await self._connection.commit()
        return cursor.rowcount == 1

    async def record_attempt(
        self, run_id: str, step_name: str, occurrence: int, owner: str | None
    ) -> int:
        self._check_connected()

        async with self._lock:
            cursor = await self._connection.execute(
                """
                UPDATE steps SET attempts = attempts + 1, owner = ?
                WHERE run_id = ? AND step_name = ? AND occurrence = ? AND status = 'PENDING'
                """,
                (owner, run_id, step_name, occurrence),
            )
            await self._connection.commit()
            if cursor.rowcount == 0:
                raise StorageError(
                    f"No PENDING step to record an attempt for: {run_id}/{step_name}#{occurrence}"
                )

            cursor = await self._connection.execute(
                "SELECT attempts FROM steps WHERE run_id = ? AND step_name = ? AND occurrence = ?",
                (run_id, step_name, occurrence),
            )
            row = await cursor.fetchone()
            return row[0]

    # ------------------------------------------------------------------------
    # Waiters
    # ------------------------------------------------------------------------

    async def put_waiter(self, waiter: Waiter) -> None:
        self._check_connected()

        await self._connection.execute(
            f"INSERT OR REPLACE INTO waiters ({_WAITER_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                waiter.run_id,
                waiter.event_id,
                waiter.step_name,
                waiter.occurrence,
                waiter.url,
                _to_ms(waiter.timeout_at),
                waiter.status.value,
                json.dumps(waiter.event_data),
                _to_ms(waiter.created_at),
            ),
        )
        await self._connection.commit()

    async def get_waiter(self, run_id: str, event_id: str) -> Waiter | None:
        self._check_connected()

        cursor = await self._connection.execute(
            f"SELECT {_WAITER_COLUMNS} FROM waiters WHERE run_id = ? AND event_id = ?",
            (run_id, event_id),
        )
        row = await cursor.fetchone()
        return self._row_to_waiter(row) if row is not None else None

    async def find_waiters(
        self, event_id: str, status: WaiterStatus | None = WaiterStatus.PENDING
    ) -> list[Waiter]:
        self._check_connected()

        if status is None:
            cursor = await self._connection.execute(
                f"SELECT {_WAITER_COLUMNS} FROM waiters WHERE event_id = ? "
                "ORDER BY created_at, rowid",
                (event_id,),
            )
        else:
            cursor = await self._connection.execute(
                f"SELECT {_WAITER_COLUMNS} FROM waiters WHERE event_id = ? AND status = ? "
                "ORDER BY created_at, rowid",
                (event_id, status.value),
            )
        rows = await cursor.fetchall()
        return [self._row_to_waiter(row) for row in rows]

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
        self._check_connected()

        cursor = await self._connection.execute(
            """
            UPDATE waiters SET status = ?, event_data = ?
            WHERE run_id = ? AND event_id = ? AND step_name = ? AND occurrence = ?
              AND status = ?
            """,
            (
                to.value,
                json.dumps(event_data),
                run_id,
                event_id,
                step_name,
                occurrence,
                expected.value,
            ),
        )
        await self._connection.commit()
        return cursor.rowcount == 1

    # ------------------------------------------------------------------------
    # Message dedupe
    # ------------------------------------------------------------------------

    async def is_message_processed(self, message_id: str) -> bool:
        self._check_connected()

        cursor = await self._connection.execute(
            "SELECT EXISTS(SELECT 1 FROM processed_messages WHERE message_id = ?)",
            (message_id,),
        )
        row = await cursor.fetchone()
        return bool(row[0]) if row else False

    async def mark_message_processed(self, message_id: str, run_id: str | None = None) -> None:
        self._check_connected()

        await self._connection.execute(
            "INSERT OR IGNORE INTO processed_messages (message_id, run_id, processed_at) "
            "VALUES (?, ?, ?)",
            (message_id, run_id, self._now_ms()),
        )
        await self._connection.commit()

    # ------------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------------

    async def cleanup_completed(self, older_than: timedelta, now: datetime) -> int:
        self._check_connected()

        cutoff = _to_ms(now - older_than)
        terminal = [s.value for s in RunStatus if s.is_terminal]
        placeholders = ", ".join("?" for _ in terminal)

        async with self._lock:
            cursor = await self._connection.execute(
                f"SELECT run_id FROM runs WHERE status IN ({placeholders}) AND updated_at < ?",
                (*terminal, cutoff),
            )
            run_ids = [row[0] for row in await cursor.fetchall()]
            for run_id in run_ids:
                await self._connection.execute("DELETE FROM steps WHERE run_id = ?", (run_id,))
                await self._connection.execute("DELETE FROM waiters WHERE run_id = ?", (run_id,))
                await self._connection.execute(
                    "DELETE FROM processed_messages WHERE run_id = ?", (run_id,)
                )
                await self._connection.execute("DELETE FROM runs WHERE run_id = ?", (run_id,))
            await self._connection.commit()
            return len(run_ids)

    async def reset(self) -> None:
        """Clear all data (for testing/demos).

        After reset, storage is empty but functional.
        """
        self._check_connected()

        await self._connection.execute("DELETE FROM steps")
        await self._connection.execute("DELETE FROM waiters")
        await self._connection.execute("DELETE FROM processed_messages")
        await self._connection.execute("DELETE FROM runs")
        await self._connection.commit()

    async def close(self) -> None:
        """Close storage connections.

        Explicit resource cleanup, not relying on GC.
        """
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    def _check_connected(self) -> None:
        """Guard clause: fail fast if connect() was not called."""
        if self._connection is None:
            raise StorageError("Storage not connected. Call connect() first.")

    # ------------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------------

    def _row_to_run(self, row: tuple) -> WorkflowRun:
        return WorkflowRun(
            run_id=row[0],
            url=row[1],
            initial_payload=bytes(row[2]) if row[2] is not None else b"",
            status=RunStatus(row[3]),
            created_at=_from_ms(row[4]),
            updated_at=_from_ms(row[5]),
            attempts=row[6],
            result=bytes(row[7]) if row[7] is not None else None,
            error=row[8],
            failure_response=bytes(row[9]) if row[9] is not None else None,
        )

    def _row_to_step(self, row: tuple) -> StepRecord:
        return StepRecord(
            run_id=row[0],
            step_name=row[1],
            occurrence=row[2],
            kind=StepKind(row[3]),
            status=StepStatus(row[4]),
            result=bytes(row[5]) if row[5] is not None else None,
            error=row[6],
            attempts=row[7],
            seq=row[8],
            batch=row[9],
            owner=row[10],
            wake_at=_from_ms(row[11]),
            event_id=row[12],
            scheduled_at=_from_ms(row[13]),
            completed_at=_from_ms(row[14]),
        )

    def _row_to_waiter(self, row: tuple) -> Waiter:
        return Waiter(
            run_id=row[0],
            event_id=row[1],
            step_name=row[2],
            occurrence=row[3],
            url=row[4],
            timeout_at=_from_ms(row[5]),
            status=WaiterStatus(row[6]),
            event_data=json.loads(row[7]) if row[7] is not None else None,
            created_at=_from_ms(row[8]),
        )
