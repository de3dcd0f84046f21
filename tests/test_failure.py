"""Tests for step retries, run retries and the Failure Handler."""

import json

import pytest

from pyresume.core import StepFailedError, WorkflowConfig
from pyresume.models import FailureContext, RetryableError, RunStatus, StepStatus
from pyresume.protocol import HEADER_RUN_ID, WorkflowResponse

from conftest import WORKFLOW_URL

FAILURE_URL = "https://app.test/api/failures"


class PaymentError(RetryableError):
    def __init__(self, message: str, is_retryable: bool = True):
        super().__init__(message)
        self._retryable = is_retryable

    def is_retryable(self) -> bool:
        return self._retryable


def always_failing(counter: dict):
    async def workflow(ctx):
        def charge():
            counter["executions"] += 1
            raise RuntimeError("card declined")

        return await ctx.run("charge", charge)

    return workflow


class FailureRecorder:
    def __init__(self):
        self.calls: list[tuple[str, FailureContext]] = []

    async def __call__(self, run, failure):
        self.calls.append((run.run_id, failure))
        return {"handled": run.run_id}


@pytest.mark.asyncio
async def test_retry_exhaustion_executes_four_times_then_fails_once(
    make_engine, client, scheduler, clock
):
    counter = {"executions": 0}
    recorder = FailureRecorder()
    start = clock.now()
    make_engine(always_failing(counter), WorkflowConfig(retries=3).with_failure_function(recorder))

    run_id = await client.trigger(WORKFLOW_URL)
    await scheduler.run_until_idle()

    assert counter["executions"] == 4
    assert len(recorder.calls) == 1
    failed_run_id, failure = recorder.calls[0]
    assert failed_run_id == run_id
    assert failure.status == 500
    assert failure.step_name == "charge"
    assert "card declined" in failure.body

    run = await client.get_run(run_id)
    assert run.status == RunStatus.FAILED
    assert json.loads(run.failure_response) == {"handled": run_id}

    step = await client.store.get_step(run_id, "charge", 0)
    assert step.status == StepStatus.FAILED
    assert step.attempts == 4
    # exponential backoff: 1s + 2s + 4s
    assert (clock.now() - start).total_seconds() == 7


@pytest.mark.asyncio
async def test_transient_failure_recovers(make_engine, client, scheduler):
    attempts = {"n": 0}

    def flaky():
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise ConnectionError("try again")
        return "ok"

    async def workflow(ctx):
        return await ctx.run("flaky", flaky)

    make_engine(workflow)
    run_id = await client.trigger(WORKFLOW_URL)
    await scheduler.run_until_idle()

    run = await client.get_run(run_id)
    assert run.status == RunStatus.SUCCEEDED
    assert json.loads(run.result) == "ok"
    assert (await client.store.get_step(run_id, "flaky", 0)).attempts == 3


@pytest.mark.asyncio
async def test_non_retryable_error_skips_retries(make_engine, client, scheduler):
    counter = {"n": 0}

    async def workflow(ctx):
        def pay():
            counter["n"] += 1
            raise PaymentError("insufficient funds", is_retryable=False)

        return await ctx.run("pay", pay)

    make_engine(workflow)
    run_id = await client.trigger(WORKFLOW_URL)
    await scheduler.run_until_idle()

    assert counter["n"] == 1
    assert (await client.get_run(run_id)).status == RunStatus.FAILED


@pytest.mark.asyncio
async def test_caught_step_failure_lets_workflow_branch(make_engine, client, scheduler):
    async def workflow(ctx):
        try:
            await ctx.run("risky", lambda: 1 / 0)
        except StepFailedError as e:
            return await ctx.run("fallback", lambda: f"recovered from {e.step_name}")
        return "no failure"

    make_engine(workflow, WorkflowConfig(retries=0))
    run_id = await client.trigger(WORKFLOW_URL)
    await scheduler.run_until_idle()

    run = await client.get_run(run_id)
    assert run.status == RunStatus.SUCCEEDED
    assert json.loads(run.result) == "recovered from risky"


@pytest.mark.asyncio
async def test_failure_url_receives_failure_context(make_engine, client, scheduler):
    received = []

    async def failure_endpoint(request):
        received.append(json.loads(request.body))
        return WorkflowResponse(200, {})

    scheduler.register(FAILURE_URL, failure_endpoint)
    counter = {"executions": 0}
    make_engine(always_failing(counter), WorkflowConfig(retries=0, failure_url=FAILURE_URL))

    run_id = await client.trigger(WORKFLOW_URL)
    await scheduler.run_until_idle()

    assert (await client.get_run(run_id)).status == RunStatus.FAILED
    assert len(received) == 1
    payload = received[0]
    assert payload["status"] == 500
    assert payload["workflowRunId"] == run_id
    assert payload["stepName"] == "charge"
    assert payload["header"] == {}
    assert "card declined" in payload["body"]


@pytest.mark.asyncio
async def test_failure_function_wins_over_failure_url(make_engine, client, scheduler):
    recorder = FailureRecorder()
    config = WorkflowConfig(retries=0, failure_url=FAILURE_URL, failure_function=recorder)
    make_engine(always_failing({"executions": 0}), config)

    await client.trigger(WORKFLOW_URL)
    await scheduler.run_until_idle()

    assert len(recorder.calls) == 1
    assert FAILURE_URL not in scheduler.deliveries


@pytest.mark.asyncio
async def test_failing_failure_function_is_retried_by_redelivery(make_engine, client, scheduler):
    calls = {"n": 0}

    def failure_function(run, failure):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("alerting is down")
        return "alerted"

    make_engine(
        always_failing({"executions": 0}),
        WorkflowConfig(retries=0).with_failure_function(failure_function),
    )
    run_id = await client.trigger(WORKFLOW_URL)
    await scheduler.deliver_due()

    assert scheduler.history[-1].status == 500
    assert (await client.get_run(run_id)).status == RunStatus.FAILED_PENDING_CALLBACK

    await scheduler.run_until_idle()
    run = await client.get_run(run_id)
    assert run.status == RunStatus.FAILED
    assert json.loads(run.failure_response) == "alerted"
    assert calls["n"] == 2


@pytest.mark.asyncio
async def test_failure_function_result_is_stored_verbatim(make_engine, client, scheduler):
    async def failure_function(run, failure):
        return {"status": "SUCCEEDED", "ticket": "OPS-7"}

    make_engine(
        always_failing({"executions": 0}),
        WorkflowConfig(retries=0).with_failure_function(failure_function),
    )
    run_id = await client.trigger(WORKFLOW_URL)
    await scheduler.run_until_idle()

    run = await client.get_run(run_id)
    assert run.status == RunStatus.FAILED
    assert json.loads(run.failure_response) == {"status": "SUCCEEDED", "ticket": "OPS-7"}
    assert {d.status for d in scheduler.history} == {200}


@pytest.mark.asyncio
async def test_no_failure_handling_still_records_failure(make_engine, client, scheduler):
    make_engine(always_failing({"executions": 0}), WorkflowConfig(retries=0))
    run_id = await client.trigger(WORKFLOW_URL)
    await scheduler.run_until_idle()

    run = await client.get_run(run_id)
    assert run.status == RunStatus.FAILED
    failure = FailureContext.from_json(run.error)
    assert failure.step_name == "charge"
    assert "card declined" in failure.message


@pytest.mark.asyncio
async def test_workflow_error_outside_steps_is_retried(make_engine, client, scheduler):
    attempts = {"n": 0}

    async def workflow(ctx):
        value = await ctx.run("load", lambda: 10)
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise ValueError("not ready")
        return value

    make_engine(workflow)
    run_id = await client.trigger(WORKFLOW_URL, run_id="wfr_run_retry")
    await scheduler.run_until_idle()

    run = await client.get_run(run_id)
    assert run.status == RunStatus.SUCCEEDED
    assert run.attempts == 2
    assert json.loads(run.result) == 10


@pytest.mark.asyncio
async def test_workflow_error_exhausts_run_retries(make_engine, client, scheduler):
    recorder = FailureRecorder()

    async def workflow(ctx):
        raise KeyError("missing")

    make_engine(workflow, WorkflowConfig(retries=2, failure_function=recorder))
    run_id = await client.trigger(WORKFLOW_URL)
    await scheduler.run_until_idle()

    run = await client.get_run(run_id)
    assert run.status == RunStatus.FAILED
    assert run.attempts == 3
    assert len(recorder.calls) == 1
    assert recorder.calls[0][1].step_name is None


@pytest.mark.asyncio
async def test_trigger_run_id_header_is_used(make_engine, client, scheduler):
    make_engine(always_failing({"executions": 0}), WorkflowConfig(retries=0))
    run_id = await client.trigger(WORKFLOW_URL, run_id="wfr_custom")
    assert run_id == "wfr_custom"
    assert scheduler.find(url=WORKFLOW_URL)[0].message.headers[HEADER_RUN_ID] == "wfr_custom"
    await scheduler.run_until_idle()
    assert (await client.get_run("wfr_custom")).status == RunStatus.FAILED
