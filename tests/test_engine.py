"""Tests for the WorkflowEngine request boundary."""

from datetime import datetime, timedelta, timezone

import pytest

from pyresume.client import Client
from pyresume.core import WorkflowConfig
from pyresume.core.steps import RunStep
from pyresume.executor import WorkflowEngine
from pyresume.executor.engine import message_token
from pyresume.executor.replay import batch_id_for
from pyresume.executor.submitter import plan_token
from pyresume.models import RunStatus, WorkflowRun
from pyresume.protocol import (
    HEADER_CALLBACK,
    HEADER_INIT,
    HEADER_MESSAGE_ID,
    HEADER_PROTOCOL_VERSION,
    HEADER_RUN_ID,
    HEADER_SIGNATURE,
    Envelope,
    WorkflowRequest,
)
from pyresume.receiver import Receiver, sign
from pyresume.scheduler import InMemoryScheduler

from conftest import WORKFLOW_URL


async def greet(ctx):
    name = (ctx.payload or {}).get("name", "world")
    return await ctx.run("greet", lambda: f"hello {name}")


def trigger_request(run_id="wfr_engine", message_id="msg-trigger", body=b'{"name": "ada"}'):
    headers = {HEADER_RUN_ID: run_id}
    if message_id:
        headers[HEADER_MESSAGE_ID] = message_id
    return WorkflowRequest(WORKFLOW_URL, headers, body)


def continuation_request(run_id, token="tok", message_id=None):
    headers = {HEADER_INIT: "false", HEADER_RUN_ID: run_id}
    if message_id:
        headers[HEADER_MESSAGE_ID] = message_id
    return WorkflowRequest(WORKFLOW_URL, headers, Envelope(run_id=run_id, token=token).to_bytes())


class TestRejectedRequests:
    @pytest.mark.asyncio
    async def test_non_post_is_rejected(self, make_engine):
        engine = make_engine(greet)
        response = await engine.handle(WorkflowRequest(WORKFLOW_URL, {}, b"", method="GET"))
        assert response.status == 400
        assert response.body["error"] == "ProtocolError"

    @pytest.mark.asyncio
    async def test_malformed_envelope_is_rejected(self, make_engine):
        engine = make_engine(greet)
        response = await engine.handle(
            WorkflowRequest(WORKFLOW_URL, {HEADER_INIT: "false"}, b"{not json")
        )
        assert response.status == 400

    @pytest.mark.asyncio
    async def test_envelope_without_token_is_rejected(self, make_engine):
        engine = make_engine(greet)
        response = await engine.handle(
            WorkflowRequest(WORKFLOW_URL, {HEADER_INIT: "false"}, b'{"runId": "wfr_1"}')
        )
        assert response.status == 400

    @pytest.mark.asyncio
    async def test_unknown_protocol_version_is_rejected(self, make_engine):
        engine = make_engine(greet)
        response = await engine.handle(
            WorkflowRequest(WORKFLOW_URL, {HEADER_PROTOCOL_VERSION: "99"}, b"")
        )
        assert response.status == 400

    @pytest.mark.asyncio
    async def test_callback_without_routing_headers_is_rejected(self, make_engine):
        engine = make_engine(greet)
        response = await engine.handle(
            WorkflowRequest(WORKFLOW_URL, {HEADER_CALLBACK: "true"}, b"{}")
        )
        assert response.status == 400

    @pytest.mark.asyncio
    async def test_continuation_for_unknown_run_is_not_found(self, make_engine):
        engine = make_engine(greet)
        response = await engine.handle(continuation_request("wfr_nope"))
        assert response.status == 404
        assert response.body["runId"] == "wfr_nope"
        assert response.body["error"] == "RunNotFoundError"


class TestSignatures:
    @pytest.mark.asyncio
    async def test_signed_deliveries_are_accepted(self, clock, in_memory_storage):
        scheduler = InMemoryScheduler(clock, signing_key="current-key")
        engine = WorkflowEngine(
            greet,
            in_memory_storage,
            scheduler,
            clock=clock,
            receiver=Receiver("current-key", clock=clock),
        )
        scheduler.register(WORKFLOW_URL, engine)
        try:
            run_id = await Client(scheduler, in_memory_storage).trigger(WORKFLOW_URL, {"name": "bo"})
            await scheduler.run_until_idle()
        finally:
            await scheduler.close()

        run = await in_memory_storage.get_run(run_id)
        assert run.status == RunStatus.SUCCEEDED
        assert [d.status for d in scheduler.history] == [200]

    @pytest.mark.asyncio
    async def test_next_signing_key_is_accepted_during_rotation(self, make_engine, clock):
        engine = make_engine(greet, receiver=Receiver("old-key", "new-key", clock=clock))
        request = trigger_request()
        request.headers[HEADER_SIGNATURE] = sign(
            "new-key", request.body, url=WORKFLOW_URL, now=clock.now()
        )
        response = await engine.handle(request)
        assert response.status == 200

    @pytest.mark.asyncio
    async def test_wrong_key_is_unauthorized(self, make_engine, clock, in_memory_storage):
        engine = make_engine(greet, receiver=Receiver("current-key", clock=clock))
        request = trigger_request()
        request.headers[HEADER_SIGNATURE] = sign(
            "stolen-key", request.body, url=WORKFLOW_URL, now=clock.now()
        )
        response = await engine.handle(request)

        assert response.status == 401
        assert response.body["error"] == "SignatureError"
        assert await in_memory_storage.get_run("wfr_engine") is None

    @pytest.mark.asyncio
    async def test_missing_signature_is_unauthorized(self, make_engine, clock):
        engine = make_engine(greet, receiver=Receiver("current-key", clock=clock))
        response = await engine.handle(trigger_request())
        assert response.status == 401

    @pytest.mark.asyncio
    async def test_tampered_body_is_unauthorized(self, make_engine, clock):
        engine = make_engine(greet, receiver=Receiver("current-key", clock=clock))
        request = trigger_request()
        request.headers[HEADER_SIGNATURE] = sign(
            "current-key", b'{"name": "eve"}', url=WORKFLOW_URL, now=clock.now()
        )
        response = await engine.handle(request)
        assert response.status == 401


    @pytest.mark.asyncio
    async def test_signature_is_checked_against_the_public_url(self, make_engine, clock):
        engine = make_engine(
            greet,
            WorkflowConfig().with_base_url("https://public.example.com"),
            receiver=Receiver("current-key", clock=clock),
        )
        body = b'{"name": "ada"}'
        request = WorkflowRequest(
            "http://localhost:8000/api/workflow",
            {
                HEADER_RUN_ID: "wfr_engine",
                HEADER_SIGNATURE: sign(
                    "current-key",
                    body,
                    url="https://public.example.com/api/workflow",
                    now=clock.now(),
                ),
            },
            body,
        )
        response = await engine.handle(request)
        assert response.status == 200
        assert response.body["status"] == "SUCCEEDED"


class TestDeduplication:
    @pytest.mark.asyncio
    async def test_duplicate_message_is_dropped(self, make_engine):
        executions = []

        async def workflow(ctx):
            return await ctx.run("count", lambda: executions.append(1) or len(executions))

        engine = make_engine(workflow)
        first = await engine.handle(trigger_request())
        second = await engine.handle(trigger_request())

        assert first.status == 200
        assert first.body == {"runId": "wfr_engine", "status": "SUCCEEDED", "detail": None}
        assert second.status == 200
        assert second.body["status"] == "DUPLICATE"
        assert executions == [1]

    @pytest.mark.asyncio
    async def test_second_trigger_for_finished_run_is_a_no_op(self, make_engine):
        executions = []

        async def workflow(ctx):
            return await ctx.run("count", lambda: executions.append(1) or len(executions))

        engine = make_engine(workflow)
        await engine.handle(trigger_request(message_id="msg-a"))
        response = await engine.handle(trigger_request(message_id="msg-b"))

        assert response.status == 200
        assert response.body["status"] == "SUCCEEDED"
        assert executions == [1]

    @pytest.mark.asyncio
    async def test_continuation_for_finished_run_is_a_no_op(self, make_engine, in_memory_storage):
        engine = make_engine(greet)
        await engine.handle(trigger_request())
        before = await in_memory_storage.get_run("wfr_engine")

        response = await engine.handle(continuation_request("wfr_engine", message_id="msg-late"))

        assert response.status == 200
        assert response.body["status"] == "SUCCEEDED"
        after = await in_memory_storage.get_run("wfr_engine")
        assert after.updated_at == before.updated_at
        assert await in_memory_storage.is_message_processed("msg-late")


class TestUrlResolution:
    @staticmethod
    async def napping(ctx):
        await ctx.sleep("nap", 10)

    @pytest.mark.asyncio
    async def test_request_url_is_used_by_default(self, make_engine, scheduler):
        engine = make_engine(self.napping)
        await engine.handle(trigger_request())
        assert scheduler.find(run_id="wfr_engine")[0].message.url == WORKFLOW_URL

    @pytest.mark.asyncio
    async def test_base_url_replaces_scheme_and_host(self, make_engine, scheduler, in_memory_storage):
        engine = make_engine(
            self.napping, WorkflowConfig(base_url="https://public.example.com")
        )
        request = WorkflowRequest(
            "http://localhost:8000/api/workflow", {HEADER_RUN_ID: "wfr_engine"}, b""
        )
        await engine.handle(request)

        expected = "https://public.example.com/api/workflow"
        assert (await in_memory_storage.get_run("wfr_engine")).url == expected
        assert scheduler.find(run_id="wfr_engine")[0].message.url == expected

    @pytest.mark.asyncio
    async def test_explicit_url_wins(self, make_engine, scheduler):
        config = WorkflowConfig(
            url="https://tunnel.example.com/hook", base_url="https://ignored.example.com"
        )
        engine = make_engine(self.napping, config)
        await engine.handle(trigger_request())
        assert scheduler.find(run_id="wfr_engine")[0].message.url == "https://tunnel.example.com/hook"


class TestRetention:
    @staticmethod
    def stored_run(run_id, status, age):
        stamp = datetime.now(timezone.utc) - age
        return WorkflowRun(
            run_id=run_id,
            url=WORKFLOW_URL,
            status=status,
            created_at=stamp,
            updated_at=stamp,
        )

    @pytest.mark.asyncio
    async def test_purge_removes_only_old_terminal_runs(self, scheduler, in_memory_storage):
        engine = WorkflowEngine(
            greet, in_memory_storage, scheduler, WorkflowConfig().with_retention(timedelta(days=1))
        )
        await in_memory_storage.create_run(
            self.stored_run("wfr_old_done", RunStatus.SUCCEEDED, timedelta(days=3))
        )
        await in_memory_storage.create_run(
            self.stored_run("wfr_old_waiting", RunStatus.WAITING, timedelta(days=3))
        )
        await in_memory_storage.create_run(
            self.stored_run("wfr_new_done", RunStatus.FAILED, timedelta(hours=1))
        )

        assert await engine.purge_expired() == 1
        assert await in_memory_storage.get_run("wfr_old_done") is None
        assert await in_memory_storage.get_run("wfr_old_waiting") is not None
        assert await in_memory_storage.get_run("wfr_new_done") is not None

    @pytest.mark.asyncio
    async def test_purge_without_retention_keeps_everything(self, scheduler, in_memory_storage):
        engine = WorkflowEngine(greet, in_memory_storage, scheduler)
        await in_memory_storage.create_run(
            self.stored_run("wfr_old_done", RunStatus.SUCCEEDED, timedelta(days=30))
        )
        assert await engine.purge_expired() == 0
        assert await engine.purge_expired(timedelta(days=7)) == 1

    @pytest.mark.asyncio
    async def test_purge_follows_simulated_time(
        self, make_engine, client, scheduler, in_memory_storage, clock
    ):
        engine = make_engine(greet, WorkflowConfig().with_retention(timedelta(days=1)))
        run_id = await client.trigger(WORKFLOW_URL, {"name": "ada"})
        await scheduler.run_until_idle()
        assert (await in_memory_storage.get_run(run_id)).status == RunStatus.SUCCEEDED

        clock.advance(timedelta(hours=12))
        assert await engine.purge_expired() == 0

        clock.advance(timedelta(days=3))
        assert await engine.purge_expired() == 1
        assert await in_memory_storage.get_run(run_id) is None


class TestTokens:
    def test_message_token_is_stable_per_message_id(self):
        assert message_token("msg-1") == message_token("msg-1")
        assert message_token("msg-1") != message_token("msg-2")
        assert message_token("msg-1").startswith("msg_")

    def test_message_token_without_id_is_fresh(self):
        assert message_token(None) != message_token(None)

    def test_plan_token_depends_on_owner_and_step(self):
        token = plan_token("tok", ("charge", 0))
        assert token.startswith("plan_")
        assert token == plan_token("tok", ("charge", 0))
        assert token != plan_token("tok", ("charge", 1))
        assert token != plan_token("other", ("charge", 0))

    def test_batch_id_accepts_non_ascii_step_names(self):
        steps = [RunStep(None, "größe", n, lambda: None) for n in range(2)]
        batch = batch_id_for(steps)
        assert batch.startswith("batch_")
        assert batch == batch_id_for(steps)
        assert batch != batch_id_for(list(reversed(steps)))
