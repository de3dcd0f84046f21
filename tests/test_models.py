"""Tests for models, statuses and configuration."""

import json
import logging
from datetime import timedelta

import pytest

from pyresume.core import WorkflowConfig
from pyresume.models import (
    CallResponse,
    FailureContext,
    RetryableError,
    RetryPolicy,
    RunStatus,
    StepKind,
    StepStatus,
    WaiterStatus,
    WaitEventResult,
    WorkflowRun,
)


class TestStatuses:
    def test_terminal_run_statuses(self):
        terminal = {s for s in RunStatus if s.is_terminal}
        assert terminal == {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELED}

    def test_failure_goes_through_pending_callback(self):
        assert RunStatus.WAITING.can_transition_to(RunStatus.FAILED_PENDING_CALLBACK)
        assert RunStatus.FAILED_PENDING_CALLBACK.can_transition_to(RunStatus.FAILED)
        assert not RunStatus.FAILED_PENDING_CALLBACK.can_transition_to(RunStatus.CANCELED)
        assert not RunStatus.FAILED_PENDING_CALLBACK.can_transition_to(RunStatus.RUNNING)

    @pytest.mark.parametrize("status", [RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELED])
    def test_terminal_runs_never_move(self, status):
        assert not any(status.can_transition_to(target) for target in RunStatus)

    def test_only_run_and_notify_resolve_inline(self):
        inline = {k for k in StepKind if k.resolves_inline}
        assert inline == {StepKind.RUN, StepKind.NOTIFY}

    def test_step_and_waiter_terminality(self):
        assert not StepStatus.PENDING.is_terminal
        assert StepStatus.FAILED.is_terminal
        assert not WaiterStatus.PENDING.is_resolved
        assert WaiterStatus.TIMED_OUT.is_resolved

    def test_statuses_print_as_values(self):
        assert str(RunStatus.FAILED_PENDING_CALLBACK) == "FAILED_PENDING_CALLBACK"
        assert f"{StepKind.WAIT_FOR_EVENT}" == "WAIT_FOR_EVENT"


class TestRetryPolicy:
    def test_standard_backoff(self):
        policy = RetryPolicy.STANDARD
        assert [policy.delay_for_attempt(a) for a in range(1, 5)] == [1000, 2000, 4000, None]

    def test_delay_is_capped(self):
        policy = RetryPolicy(
            max_attempts=10, initial_delay_ms=1000, max_delay_ms=5000, backoff_multiplier=3.0
        )
        assert policy.delay_for_attempt(3) == 5000

    def test_from_retries_keeps_base_delays(self):
        policy = RetryPolicy.from_retries(1, RetryPolicy.AGGRESSIVE)
        assert policy.max_attempts == 2
        assert policy.retries == 1
        assert policy.delay_for_attempt(1) == 100

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": 0, "initial_delay_ms": 1, "max_delay_ms": 1, "backoff_multiplier": 1.0},
            {"max_attempts": 1, "initial_delay_ms": -1, "max_delay_ms": 1, "backoff_multiplier": 1.0},
        ],
    )
    def test_invalid_policies(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)

    def test_negative_retries(self):
        with pytest.raises(ValueError):
            RetryPolicy.from_retries(-1)

    def test_retryable_error_default(self):
        assert RetryableError("transient").is_retryable()


class TestFailureContext:
    def test_from_exception(self):
        failure = FailureContext.from_exception(ValueError("bad input"), step_name="parse")

        assert failure.status == 500
        assert json.loads(failure.body) == {"error": "ValueError", "message": "bad input"}
        assert failure.message == "ValueError: bad input"
        assert str(failure) == "status 500: ValueError: bad input"

    def test_json_carries_step_name(self):
        failure = FailureContext(404, {"x-id": ["1"]}, "not found", step_name="lookup")

        data = json.loads(failure.to_json())
        assert data == {
            "status": 404,
            "header": {"x-id": ["1"]},
            "body": "not found",
            "stepName": "lookup",
        }
        assert FailureContext.from_json(failure.to_json()) == failure

    def test_plain_body_message(self):
        assert FailureContext(502, body="<html>bad gateway</html>").message == "<html>bad gateway</html>"


class TestResults:
    def test_call_response_ok(self):
        assert CallResponse(204).ok
        assert not CallResponse(302).ok
        assert CallResponse.from_dict({"status": "500", "body": "x"}) == CallResponse(500, {}, "x")

    def test_wait_event_result_dict_form(self):
        result = WaitEventResult({"approved": True})
        assert result.to_dict() == {"eventData": {"approved": True}, "timeout": False}
        assert WaitEventResult.from_dict({"timeout": True}) == WaitEventResult(None, True)


class TestWorkflowRun:
    @pytest.mark.parametrize(
        ("body", "expected"),
        [
            (b'{"userId": "u1"}', {"userId": "u1"}),
            (b"[1, 2]", [1, 2]),
            (b"plain text", "plain text"),
            (b"", None),
        ],
    )
    def test_payload_parsing(self, body, expected):
        run = WorkflowRun(run_id="wfr_1", url="https://app.test", initial_payload=body)
        assert run.payload == expected

    def test_new_runs_start_running(self):
        run = WorkflowRun(run_id="wfr_1", url="https://app.test")
        assert run.status == RunStatus.RUNNING
        assert run.attempts == 0


class TestWorkflowConfig:
    def test_defaults(self):
        config = WorkflowConfig()
        assert config.retries == 3
        assert config.step_policy.max_attempts == 4
        assert config.trace_level == logging.DEBUG
        assert config.retention is None

    def test_builder_chain(self):
        config = (
            WorkflowConfig()
            .with_retries(1)
            .with_failure_url("https://app.test/failed")
            .with_verbose()
            .with_retention(timedelta(days=30))
        )
        assert config.step_policy.max_attempts == 2
        assert config.failure_url == "https://app.test/failed"
        assert config.trace_level == logging.INFO
        assert config.retention == timedelta(days=30)

    def test_negative_retries_rejected(self):
        with pytest.raises(ValueError):
            WorkflowConfig(retries=-1)
        with pytest.raises(ValueError):
            WorkflowConfig().with_retries(-2)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("WORKFLOW_RETRIES", "5")
        monkeypatch.setenv("WORKFLOW_FAILURE_URL", "https://app.test/failed")
        monkeypatch.setenv("WORKFLOW_VERBOSE", "true")
        monkeypatch.setenv("WORKFLOW_BASE_URL", "https://public.test")
        monkeypatch.delenv("WORKFLOW_URL", raising=False)

        config = WorkflowConfig.from_env()

        assert config.retries == 5
        assert config.failure_url == "https://app.test/failed"
        assert config.verbose is True
        assert config.base_url == "https://public.test"
        assert config.url is None

    def test_from_env_rejects_bad_retries(self, monkeypatch):
        monkeypatch.setenv("WORKFLOW_RETRIES", "many")
        with pytest.raises(ValueError, match="WORKFLOW_RETRIES"):
            WorkflowConfig.from_env()

    @pytest.mark.parametrize(
        ("config", "expected"),
        [
            (WorkflowConfig(), "http://localhost:3000/api/wf?x=1"),
            (
                WorkflowConfig(base_url="https://abc.tunnel.test"),
                "https://abc.tunnel.test/api/wf?x=1",
            ),
            (
                WorkflowConfig(base_url="https://proxy.test/prefix/"),
                "https://proxy.test/prefix/api/wf?x=1",
            ),
            (WorkflowConfig(url="https://fixed.test/hook"), "https://fixed.test/hook"),
        ],
    )
    def test_resolve_url(self, config, expected):
        assert config.resolve_url("http://localhost:3000/api/wf?x=1") == expected
