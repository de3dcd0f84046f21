"""
ExecutionLog protocol - Abstract interface for storage backends.

Design Pattern: Adapter Pattern
ExecutionLog defines the target interface that all storage adapters implement.
Different storage backends (SQLite, Redis, Memory) adapt to this common interface.

Design Principle: Dependency Inversion (SOLID)
The engine, the submitter and the client depend on this abstraction,
not on concrete storage implementations.

Every state change is a conditional write:
- insert_step / create_run insert only if absent
- complete_step completes only a PENDING record
- transition_run / transition_waiter are compare-and-set on status
Concurrent and duplicated invocations rely on these returning False
instead of overwriting.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

from pyresume.core.errors import StorageError
from pyresume.models import (
    RunStatus,
    StepRecord,
    StepStatus,
    Waiter,
    WaiterStatus,
    WorkflowRun,
)

__all__ = ["ExecutionLog", "StorageError"]


class ExecutionLog(ABC):
    """
    Abstract storage interface for durable workflow runs.

    Clients program to this interface, not to concrete implementations.
    Returned objects are copies: mutating them never changes the store.
    Backends stamp updated_at and completed_at from their ``clock``, which
    must be the clock the engine uses for retention to line up.
    """

    # ========================================================================
    # Runs
    # ========================================================================

    @abstractmethod
    async def create_run(self, run: WorkflowRun) -> bool:
        """
        Insert a run if no run with the same id exists.

        Returns:
            True if the run was created, False if it already existed

        Raises:
            StorageError: If the operation fails
        """
        pass

    @abstractmethod
    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Retrieve a run. Returns None when not found (not an error condition)."""
        pass

    @abstractmethod
    async def transition_run(
        self,
        run_id: str,
        expected: Iterable[RunStatus],
        to: RunStatus,
        **fields: Any,
    ) -> bool:
        """
        Compare-and-set the run status.

        The move happens only if the current status is one of ``expected``
        and the move is allowed by RunStatus.can_transition_to(). Extra
        keyword fields (``result``, ``error``, ``failure_response``) are
        written in the same step. ``updated_at`` is always refreshed.

        Args:
            run_id: Run to update
            expected: Statuses the run must currently have
            to: New status
            **fields: WorkflowRun attributes to set together with the status

        Returns:
            True if the run moved, False if it did not match

        Raises:
            StorageError: If a field name is not an updatable run attribute
        """
        pass

    @abstractmethod
    async def increment_run_attempts(self, run_id: str) -> int:
        """
        Add one to the run-level attempt counter.

        Returns:
            The new attempt count

        Raises:
            StorageError: If the run does not exist
        """
        pass

    # ========================================================================
    # Steps
    # ========================================================================

    @abstractmethod
    async def get_steps(self, run_id: str) -> list[StepRecord]:
        """All step records of a run, ordered by seq."""
        pass

    @abstractmethod
    async def get_step(self, run_id: str, step_name: str, occurrence: int) -> StepRecord | None:
        pass

    @abstractmethod
    async def insert_step(self, record: StepRecord) -> bool:
        """
        Insert a step record if (run_id, step_name, occurrence) is absent.

        The store assigns the next ``seq`` of the run. The record passed in
        is not modified.

        Returns:
            True if inserted, False if a record with that identity existed
        """
        pass

    @abstractmethod
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
        """
        Move a PENDING step to SUCCEEDED or FAILED.

        Terminal records are immutable, so completing a record that is
        already terminal (or missing) is a no-op.

        Args:
            status: SUCCEEDED or FAILED
            result: Encoded result (SUCCEEDED)
            error: FailureContext JSON (FAILED)
            completed_at: Completion time
            attempts: New attempt count, None keeps the stored one

        Returns:
            True if the record moved, False otherwise

        Raises:
            StorageError: If ``status`` is PENDING
        """
        pass

    @abstractmethod
    async def record_attempt(
        self, run_id: str, step_name: str, occurrence: int, owner: str | None
    ) -> int:
        """
        Count one more attempt of a PENDING step and hand it to ``owner``.

        Returns:
            The new attempt count

        Raises:
            StorageError: If the step does not exist or is not PENDING
        """
        pass

    # ========================================================================
    # Waiters
    # ========================================================================

    @abstractmethod
    async def put_waiter(self, waiter: Waiter) -> None:
        """Store a waiter, replacing any earlier one for (run_id, event_id)."""
        pass

    @abstractmethod
    async def get_waiter(self, run_id: str, event_id: str) -> Waiter | None:
        pass

    @abstractmethod
    async def find_waiters(
        self, event_id: str, status: WaiterStatus | None = WaiterStatus.PENDING
    ) -> list[Waiter]:
        """
        Waiters of every run listening on ``event_id``, oldest first.

        Args:
            event_id: Event identifier
            status: Only waiters in this status (None for all)
        """
        pass

    @abstractmethod
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
        """
        Compare-and-set a waiter's status (test-and-set).

        Matches only the waiter created by step (step_name, occurrence), so
        a stale delivery for an older wait cannot resolve a newer one.
        ``event_data`` is stored with the new status.

        Returns:
            True if this call moved the waiter
        """
        pass

    # ========================================================================
    # Message dedupe
    # ========================================================================

    @abstractmethod
    async def is_message_processed(self, message_id: str) -> bool:
        pass

    @abstractmethod
    async def mark_message_processed(self, message_id: str, run_id: str | None = None) -> None:
        """Remember a scheduler message id as handled (idempotent)."""
        pass

    # ========================================================================
    # Maintenance
    # ========================================================================

    @abstractmethod
    async def cleanup_completed(self, older_than: timedelta, now: datetime) -> int:
        """
        Delete terminal runs last updated before ``now - older_than``.

        Their steps, waiters and processed message ids go with them.

        Returns:
            Number of runs deleted
        """
        pass

    @abstractmethod
    async def reset(self) -> None:
        """Clear all data (for testing/demos)."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release connections. The instance is unusable afterwards."""
        pass


UPDATABLE_RUN_FIELDS = frozenset({"result", "error", "failure_response", "attempts"})


def check_run_fields(fields: dict[str, Any]) -> None:
    """
    Validate the extra fields passed to transition_run().

    Raises:
        StorageError: If a field is not updatable
    """
    unknown = set(fields) - UPDATABLE_RUN_FIELDS
    if unknown:
        raise StorageError(f"Cannot update run field(s): {', '.join(sorted(unknown))}")
