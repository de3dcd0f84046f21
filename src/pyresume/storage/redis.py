"""Redis-based execution log implementation.

Provides a Redis backend so that any number of stateless workflow endpoints
on different machines can share one durable store.

Data Structures:
- pyresume:run:{run_id} (STRING): WorkflowRun JSON
- pyresume:steps:{run_id} (HASH): "{step_name}#{occurrence}" -> StepRecord JSON
- pyresume:seq:{run_id} (STRING): Ledger sequence counter
- pyresume:waiter:{run_id}:{event_id} (STRING): Waiter JSON
- pyresume:waiters:{event_id} (ZSET): run ids waiting on an event (score = created_at)
- pyresume:run-events:{run_id} (SET): event ids a run has waited on
- pyresume:msg:{message_id} (STRING): Processed scheduler message ids
- pyresume:run-msgs:{run_id} (SET): Message ids processed for a run
- pyresume:terminal (ZSET): Terminal runs (score = updated_at) for retention

Key Features:
- Insert-if-absent: SET NX for runs, Lua HEXISTS/HSET for steps
- Compare-and-set: one Lua script checks status and applies a JSON patch
- Connection pooling: redis-py connection pool for concurrent access

Design: Adapter Pattern
Implements ExecutionLog protocol for Redis, adapting Redis key-value
store to the ExecutionLog interface.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

try:
    import redis.asyncio as redis
except ImportError:
    raise ImportError("redis-py is required for RedisExecutionLog. Install with: pip install redis")

from pyresume.core.clock import Clock, SystemClock
from pyresume.models import (
    RunStatus,
    StepRecord,
    StepStatus,
    Waiter,
    WaiterStatus,
    WorkflowRun,
)
from pyresume.models.serialization import b64encode, dt_to_str
from pyresume.storage.base import ExecutionLog, StorageError, check_run_fields

# Insert a step record if its field is absent, stamping the next seq.
# KEYS[1] = steps hash, KEYS[2] = seq counter
# ARGV[1] = hash field, ARGV[2] = record JSON
_INSERT_STEP = """
if redis.call('HEXISTS', KEYS[1], ARGV[1]) == 1 then
    return 0
end
local record = cjson.decode(ARGV[2])
record['seq'] = redis.call('INCR', KEYS[2]) - 1
redis.call('HSET', KEYS[1], ARGV[1], cjson.encode(record))
return 1
"""

# Compare-and-set on a JSON document stored in a string key or hash field.
# KEYS[1] = key
# ARGV[1] = hash field ('' for a string key)
# ARGV[2] = JSON array of accepted current statuses
# ARGV[3] = JSON object of additional equality conditions
# ARGV[4] = JSON patch applied on success
# ARGV[5] = numeric field to increment on success ('' for none)
# Returns 0 if the document is missing or does not match, otherwise 1
# (or the incremented value).
_COMPARE_AND_SET = """
local raw
if ARGV[1] == '' then
    raw = redis.call('GET', KEYS[1])
else
    raw = redis.call('HGET', KEYS[1], ARGV[1])
end
if not raw then
    return 0
end
local doc = cjson.decode(raw)
local matched = false
for _, status in ipairs(cjson.decode(ARGV[2])) do
    if doc['status'] == status then
        matched = true
    end
end
if not matched then
    return 0
end
for name, value in pairs(cjson.decode(ARGV[3])) do
    if doc[name] ~= value then
        return 0
    end
end
for name, value in pairs(cjson.decode(ARGV[4])) do
    doc[name] = value
end
local result = 1
if ARGV[5] ~= '' then
    doc[ARGV[5]] = (doc[ARGV[5]] or 0) + 1
    result = doc[ARGV[5]]
end
local out = cjson.encode(doc)
if ARGV[1] == '' then
    redis.call('SET', KEYS[1], out)
else
    redis.call('HSET', KEYS[1], ARGV[1], out)
end
return result
"""

_RUN_FIELD_NAMES = {
    "result": "result",
    "error": "error",
    "failure_response": "failureResponse",
    "attempts": "attempts",
}
_BYTES_RUN_FIELDS = {"result", "failure_response"}
_PREFIX = "pyresume"


class RedisExecutionLog(ExecutionLog):
    """Redis execution log using connection pooling.

    All dependencies (Redis connection) passed explicitly.

    Usage:
        storage = RedisExecutionLog("redis://localhost:6379")
        await storage.connect()

        await storage.create_run(run)
        steps = await storage.get_steps(run.run_id)
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        max_connections: int = 16,
        clock: Clock | None = None,
    ):
        """Initialize Redis execution log.

        Default redis_url works for local development.

        Args:
            redis_url: Redis connection URL
            max_connections: Maximum pool size
            clock: Source of updatedAt/completedAt stamps (defaults to the system clock)
        """
        self.clock = clock or SystemClock()
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._redis: redis.Redis | None = None
        self._insert_step = None
        self._compare_and_set = None

    def __repr__(self) -> str:
        return f"RedisExecutionLog({self._redis_url})"

    async def connect(self) -> None:
        """Establish Redis connection pool and register Lua scripts."""
        if self._redis is not None:
            return
        self._redis = redis.from_url(
            self._redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=self._max_connections,
        )
        self._insert_step = self._redis.register_script(_INSERT_STEP)
        self._compare_and_set = self._redis.register_script(_COMPARE_AND_SET)

    async def close(self) -> None:
        """Close Redis connection pool."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _check_connected(self) -> None:
        """Ensure connection established.

        Raises immediately if not connected.
        """
        if self._redis is None:
            raise StorageError("Not connected. Call connect() first.")

    @staticmethod
    def _run_key(run_id: str) -> str:
        return f"{_PREFIX}:run:{run_id}"

    @staticmethod
    def _steps_key(run_id: str) -> str:
        return f"{_PREFIX}:steps:{run_id}"

    @staticmethod
    def _seq_key(run_id: str) -> str:
        return f"{_PREFIX}:seq:{run_id}"

    @staticmethod
    def _step_field(step_name: str, occurrence: int) -> str:
        return f"{step_name}#{occurrence}"

    @staticmethod
    def _waiter_key(run_id: str, event_id: str) -> str:
        return f"{_PREFIX}:waiter:{run_id}:{event_id}"

    @staticmethod
    def _event_key(event_id: str) -> str:
        return f"{_PREFIX}:waiters:{event_id}"

    @staticmethod
    def _run_events_key(run_id: str) -> str:
        return f"{_PREFIX}:run-events:{run_id}"

    @staticmethod
    def _message_key(message_id: str) -> str:
        return f"{_PREFIX}:msg:{message_id}"

    @staticmethod
    def _run_messages_key(run_id: str) -> str:
        return f"{_PREFIX}:run-msgs:{run_id}"

    @staticmethod
    def _terminal_key() -> str:
        return f"{_PREFIX}:terminal"

    async def _cas(
        self,
        key: str,
        expected: Iterable[str],
        patch: dict[str, Any],
        field: str = "",
        conditions: dict[str, Any] | None = None,
        increment: str = "",
    ) -> int:
        return int(
            await self._compare_and_set(
                keys=[key],
                args=[
                    field,
                    json.dumps(list(expected)),
                    json.dumps(conditions or {}),
                    json.dumps(patch),
                    increment,
                ],
            )
        )

    # ------------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------------

    async def create_run(self, run: WorkflowRun) -> bool:
        self._check_connected()
        created = await self._redis.set(
            self._run_key(run.run_id), json.dumps(run.to_dict()), nx=True
        )
        return bool(created)

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        self._check_connected()
        raw = await self._redis.get(self._run_key(run_id))
        return WorkflowRun.from_dict(json.loads(raw)) if raw is not None else None

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

        now = self.clock.now()
        patch: dict[str, Any] = {"status": to.value, "updatedAt": dt_to_str(now)}
        for name, value in fields.items():
            patch[_RUN_FIELD_NAMES[name]] = b64encode(value) if name in _BYTES_RUN_FIELDS else value

        moved = await self._cas(self._run_key(run_id), allowed, patch)
        if moved and to.is_terminal:
            await self._redis.zadd(self._terminal_key(), {run_id: now.timestamp()})
        return bool(moved)

    async def increment_run_attempts(self, run_id: str) -> int:
        self._check_connected()
        statuses = [s.value for s in RunStatus]
        patch = {"updatedAt": dt_to_str(self.clock.now())}
        attempts = await self._cas(self._run_key(run_id), statuses, patch, increment="attempts")
        if attempts == 0:
            raise StorageError(f"Run not found: {run_id}")
        return attempts

    # ------------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------------

    async def get_steps(self, run_id: str) -> list[StepRecord]:
        self._check_connected()
        raw = await self._redis.hvals(self._steps_key(run_id))
        records = [StepRecord.from_dict(json.loads(item)) for item in raw]
        return sorted(records, key=lambda r: r.seq)

    async def get_step(self, run_id: str, step_name: str, occurrence: int) -> StepRecord | None:
        self._check_connected()
        raw = await self._redis.hget(
            self._steps_key(run_id), self._step_field(step_name, occurrence)
        )
        return StepRecord.from_dict(json.loads(raw)) if raw is not None else None

    async def insert_step(self, record: StepRecord) -> bool:
        self._check_connected()
        inserted = await self._insert_step(
            keys=[self._steps_key(record.run_id), self._seq_key(record.run_id)],
            args=[
                self._step_field(record.step_name, record.occurrence),
                json.dumps(record.to_dict()),
            ],
        )
        return bool(inserted)

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

        patch: dict[str, Any] = {
            "status": status.value,
            "result": b64encode(result) if status is StepStatus.SUCCEEDED else None,
            "error": error if status is StepStatus.FAILED else None,
            "completedAt": dt_to_str(completed_at or self.clock.now()),
        }
        if attempts is not None:
            patch["attempts"] = attempts
        moved = await self._cas(
            self._steps_key(run_id),
            [StepStatus.PENDING.value],
            patch,
            field=self._step_field(step_name, occurrence),
        )
        return bool(moved)

    async def record_attempt(
        self, run_id: str, step_name: str, occurrence: int, owner: str | None
    ) -> int:
        self._check_connected()
        attempts = await self._cas(
            self._steps_key(run_id),
            [StepStatus.PENDING.value],
            {"owner": owner},
            field=self._step_field(step_name, occurrence),
            increment="attempts",
        )
        if attempts == 0:
            raise StorageError(
                f"No PENDING step to record an attempt for: {run_id}/{step_name}#{occurrence}"
            )
        return attempts

    # ------------------------------------------------------------------------
    # Waiters
    # ------------------------------------------------------------------------

    async def put_waiter(self, waiter: Waiter) -> None:
        self._check_connected()
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._waiter_key(waiter.run_id, waiter.event_id), json.dumps(waiter.to_dict()))
            pipe.zadd(
                self._event_key(waiter.event_id),
                {waiter.run_id: waiter.created_at.timestamp()},
            )
            pipe.sadd(self._run_events_key(waiter.run_id), waiter.event_id)
            await pipe.execute()

    async def get_waiter(self, run_id: str, event_id: str) -> Waiter | None:
        self._check_connected()
        raw = await self._redis.get(self._waiter_key(run_id, event_id))
        return Waiter.from_dict(json.loads(raw)) if raw is not None else None

    async def find_waiters(
        self, event_id: str, status: WaiterStatus | None = WaiterStatus.PENDING
    ) -> list[Waiter]:
        self._check_connected()
        run_ids = await self._redis.zrange(self._event_key(event_id), 0, -1)
        waiters = []
        for run_id in run_ids:
            waiter = await self.get_waiter(run_id, event_id)
            if waiter is not None and (status is None or waiter.status is status):
                waiters.append(waiter)
        return waiters

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
        moved = await self._cas(
            self._waiter_key(run_id, event_id),
            [expected.value],
            {"status": to.value, "eventData": event_data},
            conditions={"stepName": step_name, "occurrence": occurrence},
        )
        return bool(moved)

    # ------------------------------------------------------------------------
    # Message dedupe
    # ------------------------------------------------------------------------

    async def is_message_processed(self, message_id: str) -> bool:
        self._check_connected()
        return bool(await self._redis.exists(self._message_key(message_id)))

    async def mark_message_processed(self, message_id: str, run_id: str | None = None) -> None:
        self._check_connected()
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._message_key(message_id), run_id or "", nx=True)
            if run_id is not None:
                pipe.sadd(self._run_messages_key(run_id), message_id)
            await pipe.execute()

    # ------------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------------

    async def cleanup_completed(self, older_than: timedelta, now: datetime) -> int:
        self._check_connected()
        cutoff = (now - older_than).timestamp()
        run_ids = await self._redis.zrangebyscore(self._terminal_key(), "-inf", f"({cutoff}")
        for run_id in run_ids:
            event_ids = await self._redis.smembers(self._run_events_key(run_id))
            message_ids = await self._redis.smembers(self._run_messages_key(run_id))
            async with self._redis.pipeline(transaction=True) as pipe:
                for event_id in event_ids:
                    pipe.delete(self._waiter_key(run_id, event_id))
                    pipe.zrem(self._event_key(event_id), run_id)
                for message_id in message_ids:
                    pipe.delete(self._message_key(message_id))
                pipe.delete(
                    self._run_key(run_id),
                    self._steps_key(run_id),
                    self._seq_key(run_id),
                    self._run_events_key(run_id),
                    self._run_messages_key(run_id),
                )
                pipe.zrem(self._terminal_key(), run_id)
                await pipe.execute()
        return len(run_ids)

    async def reset(self) -> None:
        """Clear all pyresume keys (for testing/demos)."""
        self._check_connected()
        keys = [key async for key in self._redis.scan_iter(match=f"{_PREFIX}:*")]
        if keys:
            await self._redis.delete(*keys)
