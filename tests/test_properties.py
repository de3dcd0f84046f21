"""
Property-based tests for pyresume using Hypothesis.

These tests generate many cases to find edge cases in:
- Retry policy calculations
- Ledger merging (order and repetition of snapshots)
- Storage isolation between runs
- Parallel batch identity
"""

import asyncio

import pytest
from hypothesis import HealthCheck, assume, given, settings
from hypothesis import strategies as st

from pyresume.core.ledger import merge_records
from pyresume.core.steps import RunStep
from pyresume.executor.replay import batch_id_for
from pyresume.models import RetryPolicy, StepKind, StepRecord, StepStatus
from pyresume.storage import InMemoryExecutionLog

# ==============================================================================
# PROPERTY 1: Retry Policy Calculations
# ==============================================================================


@pytest.mark.property
@given(
    max_attempts=st.integers(min_value=1, max_value=100),
    initial_delay_ms=st.integers(min_value=1, max_value=10000),
    max_delay_ms=st.integers(min_value=100, max_value=60000),
    backoff_multiplier=st.floats(min_value=1.0, max_value=5.0),
    attempt=st.integers(min_value=1, max_value=50),
)
def test_retry_policy_delay_properties(
    max_attempts, initial_delay_ms, max_delay_ms, backoff_multiplier, attempt
):
    """
    Property: Retry delays follow exponential backoff with ceiling.

    1. Returns None when attempt >= max_attempts
    2. Delay never exceeds max_delay
    3. The first retry waits initial_delay
    4. Delays never shrink from one attempt to the next
    """
    assume(max_delay_ms >= initial_delay_ms)

    policy = RetryPolicy(
        max_attempts=max_attempts,
        initial_delay_ms=initial_delay_ms,
        max_delay_ms=max_delay_ms,
        backoff_multiplier=backoff_multiplier,
    )

    delay = policy.delay_for_attempt(attempt)

    if attempt >= max_attempts:
        assert delay is None
        return

    assert isinstance(delay, int)
    assert 0 <= delay <= max_delay_ms
    if attempt == 1:
        assert delay == initial_delay_ms
    following = policy.delay_for_attempt(attempt + 1)
    if following is not None:
        assert following >= delay


@pytest.mark.property
@given(retries=st.integers(min_value=0, max_value=20))
def test_from_retries_allows_exactly_retries_delays(retries):
    """Property: a policy built from N retries schedules exactly N retries."""
    policy = RetryPolicy.from_retries(retries)

    delays = [policy.delay_for_attempt(attempt) for attempt in range(1, retries + 3)]

    assert policy.max_attempts == retries + 1
    assert all(d is not None for d in delays[:retries])
    assert all(d is None for d in delays[retries:])


# ==============================================================================
# PROPERTY 2: Ledger merge is order-insensitive and idempotent
# ==============================================================================

STEP_NAMES = ["fetch", "charge", "email"]


@st.composite
def snapshots(draw):
    """Snapshots of one run as different invocations could have seen it."""
    outcomes = {
        name: draw(st.sampled_from([StepStatus.SUCCEEDED, StepStatus.FAILED]))
        for name in STEP_NAMES
    }
    result = []
    for _ in range(draw(st.integers(min_value=1, max_value=6))):
        snapshot = []
        for name in draw(st.lists(st.sampled_from(STEP_NAMES), unique=True)):
            record = StepRecord("wfr_prop", name, 0, StepKind.RUN)
            if draw(st.booleans()):
                record.status = outcomes[name]
                if record.status is StepStatus.SUCCEEDED:
                    record.result = f'"{name}"'.encode()
                else:
                    record.error = f'{{"status": 500, "body": "{name}"}}'
            snapshot.append(record)
        result.append(snapshot)
    return result


async def merged_state(snapshot_list):
    store = InMemoryExecutionLog()
    for snapshot in snapshot_list:
        await merge_records(store, snapshot)
    steps = await store.get_steps("wfr_prop")
    return {(s.step_name, s.status, s.result, s.error) for s in steps}


@pytest.mark.property
@settings(max_examples=100, suppress_health_check=[HealthCheck.too_slow])
@given(snapshot_list=snapshots(), data=st.data())
def test_merge_order_does_not_change_end_state(snapshot_list, data):
    """
    Property: merging the same snapshots in any order, with repeats,
    leaves the same terminal records in the store.
    """
    shuffled = data.draw(st.permutations(snapshot_list))
    repeated = shuffled + data.draw(st.lists(st.sampled_from(snapshot_list), max_size=3))

    expected = asyncio.run(merged_state(snapshot_list))
    actual = asyncio.run(merged_state(repeated))

    assert actual == expected


# ==============================================================================
# PROPERTY 3: Storage isolates runs
# ==============================================================================


@pytest.mark.property
@pytest.mark.asyncio
@settings(max_examples=30, deadline=None)
@given(
    num_runs=st.integers(min_value=1, max_value=8),
    steps_per_run=st.integers(min_value=1, max_value=10),
)
async def test_storage_isolates_runs(num_runs, steps_per_run):
    """Property: steps written for one run never show up in another."""
    storage = InMemoryExecutionLog()
    run_ids = [f"wfr_{i}" for i in range(num_runs)]

    for run_id in run_ids:
        for occurrence in range(steps_per_run):
            await storage.insert_step(StepRecord(run_id, "loop", occurrence, StepKind.RUN))

    for run_id in run_ids:
        steps = await storage.get_steps(run_id)
        assert {s.run_id for s in steps} == {run_id}
        assert [s.seq for s in steps] == list(range(steps_per_run))


# ==============================================================================
# PROPERTY 4: Parallel batch identity
# ==============================================================================


@pytest.mark.property
@given(
    keys=st.lists(
        st.tuples(
            st.text(min_size=1, max_size=20, alphabet=st.characters(whitelist_categories=("Ll",))),
            st.integers(min_value=0, max_value=5),
        ),
        min_size=1,
        max_size=6,
        unique=True,
    )
)
def test_batch_id_is_deterministic(keys):
    """Property: the same members always yield the same batch id."""

    def members():
        return [RunStep(None, name, occurrence, lambda: None) for name, occurrence in keys]

    first = batch_id_for(members())
    assert first == batch_id_for(members())
    assert first.startswith("batch_")
