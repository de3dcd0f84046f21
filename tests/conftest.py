"""
Pytest configuration and fixtures for pyresume tests.

Provides reusable fixtures for storage backends, the simulated scheduler,
and a factory that wires a workflow function into a WorkflowEngine.
"""

import shutil
import tempfile
from collections.abc import AsyncGenerator
from pathlib import Path
from uuid import uuid4

import pytest

from pyresume.client import Client
from pyresume.core import ManualClock, WorkflowConfig
from pyresume.executor import WorkflowEngine
from pyresume.scheduler import InMemoryScheduler
from pyresume.storage import InMemoryExecutionLog, SqliteExecutionLog

WORKFLOW_URL = "https://app.test/api/workflow"


@pytest.fixture
async def in_memory_storage(clock) -> AsyncGenerator[InMemoryExecutionLog, None]:
    """Async in-memory storage fixture on the simulated clock."""
    storage = InMemoryExecutionLog(clock)
    yield storage
    await storage.reset()


@pytest.fixture
async def sqlite_memory_storage(clock) -> AsyncGenerator[SqliteExecutionLog, None]:
    """Async SQLite in-memory storage fixture on the simulated clock."""
    storage = SqliteExecutionLog(":memory:", clock)
    await storage.connect()
    yield storage
    await storage.close()


@pytest.fixture
def temp_db_path():
    """Temporary database file path with automatic cleanup."""
    tmpdir = Path(tempfile.mkdtemp())
    db_path = tmpdir / "test.db"
    yield db_path
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def random_run_id() -> str:
    return f"wfr_{uuid4()}"


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
async def scheduler(clock) -> AsyncGenerator[InMemoryScheduler, None]:
    scheduler = InMemoryScheduler(clock)
    yield scheduler
    await scheduler.close()


@pytest.fixture
def client(scheduler, in_memory_storage) -> Client:
    return Client(scheduler, in_memory_storage)


@pytest.fixture
def make_engine(scheduler, in_memory_storage, clock):
    """
    Factory wiring a workflow function to the shared store and scheduler.

    The engine is registered with the scheduler at ``url`` so that
    deliveries reach it in-process.
    """

    def factory(workflow, config: WorkflowConfig | None = None, url: str = WORKFLOW_URL, **kwargs):
        engine = WorkflowEngine(
            workflow,
            kwargs.pop("store", in_memory_storage),
            scheduler,
            config=config,
            clock=clock,
            **kwargs,
        )
        scheduler.register(url, engine)
        return engine

    return factory
