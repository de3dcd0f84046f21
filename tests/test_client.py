"""Tests for the out-of-band Client."""

import json

import pytest

from pyresume.models import RunStatus
from pyresume.protocol import HEADER_PROTOCOL_VERSION, HEADER_RUN_ID, PROTOCOL_VERSION

from conftest import WORKFLOW_URL


@pytest.mark.asyncio
async def test_trigger_publishes_json_payload(client, scheduler):
    run_id = await client.trigger(WORKFLOW_URL, {"userId": "u1"}, headers={"X-Tenant": "acme"})

    assert run_id.startswith("wfr_")
    (scheduled,) = scheduler.find(url=WORKFLOW_URL)
    message = scheduled.message
    assert json.loads(message.body) == {"userId": "u1"}
    assert message.headers["Content-Type"] == "application/json"
    assert message.headers["X-Tenant"] == "acme"
    assert message.headers[HEADER_RUN_ID] == run_id
    assert message.headers[HEADER_PROTOCOL_VERSION] == PROTOCOL_VERSION
    assert message.run_id == run_id


@pytest.mark.parametrize(
    ("body", "expected"),
    [(None, b""), ("plain", b"plain"), (b"\x00raw", b"\x00raw")],
)
@pytest.mark.asyncio
async def test_trigger_sends_text_and_bytes_as_is(client, scheduler, body, expected):
    await client.trigger(WORKFLOW_URL, body)
    message = scheduler.find(url=WORKFLOW_URL)[0].message
    assert message.body == expected
    assert "Content-Type" not in message.headers


@pytest.mark.asyncio
async def test_trigger_delay_and_retries(client, scheduler, clock):
    await client.trigger(WORKFLOW_URL, delay=90, retries=1)

    scheduled = scheduler.find(url=WORKFLOW_URL)[0]
    assert (scheduled.deliver_at - clock.now()).total_seconds() == 90
    assert scheduled.message.retries == 1


@pytest.mark.asyncio
async def test_trigger_run_end_to_end(make_engine, client, scheduler):
    async def workflow(ctx):
        total = await ctx.run("sum", lambda: sum(ctx.payload["items"]))
        return {"total": total}

    make_engine(workflow)
    run_id = await client.trigger(WORKFLOW_URL, {"items": [1, 2, 3]})
    await scheduler.run_until_idle()

    run = await client.get_run(run_id)
    assert run.status == RunStatus.SUCCEEDED
    assert json.loads(run.result) == {"total": 6}
    steps = await client.get_steps(run_id)
    assert [(s.step_name, s.attempts) for s in steps] == [("sum", 1)]


@pytest.mark.asyncio
async def test_notify_without_waiters_returns_empty_list(client):
    assert await client.notify("nobody-listens") == []


@pytest.mark.asyncio
async def test_get_unknown_run(client):
    assert await client.get_run("wfr_unknown") is None
    assert await client.get_steps("wfr_unknown") == []
