"""Storage backends for durable workflow state persistence.

Provides multiple storage implementations behind a common interface:
    - ExecutionLog: Abstract interface
    - SqliteExecutionLog: SQLite-backed storage
    - RedisExecutionLog: Redis-backed distributed storage
    - InMemoryExecutionLog: In-memory storage for testing

Design: Adapter Pattern + Dependency Inversion (SOLID)
    All storage implementations adapt to ExecutionLog interface.
    Clients depend on abstraction, not concrete implementations,
    enabling easy swapping between storage backends.
"""

from pyresume.storage.base import ExecutionLog, StorageError

# Lazy imports so that aiosqlite and redis are only loaded when the
# matching backend is used


def __getattr__(name: str):
    """Lazy import storage implementations."""
    if name == "InMemoryExecutionLog":
        from pyresume.storage.memory import InMemoryExecutionLog

        return InMemoryExecutionLog
    elif name == "RedisExecutionLog":
        from pyresume.storage.redis import RedisExecutionLog

        return RedisExecutionLog
    elif name == "SqliteExecutionLog":
        from pyresume.storage.sqlite import SqliteExecutionLog

        return SqliteExecutionLog
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "ExecutionLog",
    "StorageError",
    "SqliteExecutionLog",
    "RedisExecutionLog",
    "InMemoryExecutionLog",
]
