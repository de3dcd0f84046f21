"""Run-level configuration for a workflow endpoint.

WorkflowConfig is built with chained ``with_*`` calls or read from the
environment with ``WorkflowConfig.from_env()``.
"""

import logging
import os
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from pyresume.models import FailureContext, RetryPolicy, WorkflowRun

FailureFunction = Callable[[WorkflowRun, FailureContext], Awaitable[Any] | Any]
"""Called with the failed run and its FailureContext. The return value is
JSON-encoded and stored as the run's failure_response."""

DEFAULT_RETRIES = 3
DEFAULT_WAIT_TIMEOUT = timedelta(days=7)

_TRUTHY = {"1", "true", "yes", "on"}


class WorkflowConfig:
    """Per-endpoint settings.

    Builder pattern allows fluent configuration:
        config = WorkflowConfig().with_retries(5).with_failure_url("https://...")

    Attributes:
        retries: Retries after the first attempt for RUN steps and for
            errors raised by the workflow itself (default 3)
        failure_url: URL that receives the FailureContext of a failed run
        failure_function: In-process failure callback, takes precedence
            over failure_url
        verbose: Log per-invocation trace lines at INFO instead of DEBUG
        url: Full self-invocation URL, overrides the request URL
        base_url: Replaces scheme, host and port of the request URL
        retry_policy: Backoff shape for retries (max_attempts is derived from retries)
        retention: How long terminal runs are kept before cleanup
    """

    def __init__(
        self,
        retries: int = DEFAULT_RETRIES,
        failure_url: str | None = None,
        failure_function: FailureFunction | None = None,
        verbose: bool = False,
        url: str | None = None,
        base_url: str | None = None,
        retry_policy: RetryPolicy | None = None,
        retention: timedelta | None = None,
    ):
        if retries < 0:
            raise ValueError(f"retries must be non-negative, got {retries}")
        self.retries = retries
        self.failure_url = failure_url
        self.failure_function = failure_function
        self.verbose = verbose
        self.url = url
        self.base_url = base_url
        self.retry_policy = retry_policy or RetryPolicy.STANDARD
        self.retention = retention

    @classmethod
    def from_env(cls) -> "WorkflowConfig":
        """
        Read configuration from environment variables.

        Reads WORKFLOW_URL, WORKFLOW_BASE_URL, WORKFLOW_RETRIES,
        WORKFLOW_FAILURE_URL and WORKFLOW_VERBOSE. Unset variables keep
        their defaults.

        Raises:
            ValueError: If WORKFLOW_RETRIES is not a non-negative integer
        """
        retries_text = os.getenv("WORKFLOW_RETRIES")
        try:
            retries = int(retries_text) if retries_text else DEFAULT_RETRIES
        except ValueError as e:
            raise ValueError(f"WORKFLOW_RETRIES must be an integer, got {retries_text!r}") from e
        return cls(
            retries=retries,
            failure_url=os.getenv("WORKFLOW_FAILURE_URL") or None,
            verbose=os.getenv("WORKFLOW_VERBOSE", "").strip().lower() in _TRUTHY,
            url=os.getenv("WORKFLOW_URL") or None,
            base_url=os.getenv("WORKFLOW_BASE_URL") or None,
        )

    def with_retries(self, retries: int) -> "WorkflowConfig":
        if retries < 0:
            raise ValueError(f"retries must be non-negative, got {retries}")
        self.retries = retries
        return self

    def with_failure_url(self, url: str) -> "WorkflowConfig":
        self.failure_url = url
        return self

    def with_failure_function(self, fn: FailureFunction) -> "WorkflowConfig":
        """Set the in-process failure callback (wins over failure_url)."""
        self.failure_function = fn
        return self

    def with_verbose(self, verbose: bool = True) -> "WorkflowConfig":
        self.verbose = verbose
        return self

    def with_url(self, url: str) -> "WorkflowConfig":
        self.url = url
        return self

    def with_base_url(self, base_url: str) -> "WorkflowConfig":
        self.base_url = base_url
        return self

    def with_retry_policy(self, policy: RetryPolicy) -> "WorkflowConfig":
        self.retry_policy = policy
        return self

    def with_retention(self, retention: timedelta) -> "WorkflowConfig":
        self.retention = retention
        return self

    @property
    def step_policy(self) -> RetryPolicy:
        """Retry policy with ``retries + 1`` attempts and the configured backoff."""
        return RetryPolicy.from_retries(self.retries, self.retry_policy)

    @property
    def trace_level(self) -> int:
        return logging.INFO if self.verbose else logging.DEBUG

    def resolve_url(self, request_url: str) -> str:
        """
        Compute the self-invocation URL for a request.

        ``url`` wins outright. Otherwise ``base_url`` replaces the scheme
        and host of the request URL, keeping its path and query. This is
        needed behind proxies and tunnels where the request URL is not
        reachable from the scheduler.
        """
        if self.url:
            return self.url
        if not self.base_url:
            return request_url
        request = urlsplit(request_url)
        base = urlsplit(self.base_url)
        path = base.path.rstrip("/") + request.path
        return urlunsplit((base.scheme, base.netloc, path, request.query, ""))

    def __repr__(self) -> str:
        return (
            f"WorkflowConfig(retries={self.retries}, failure_url={self.failure_url!r}, "
            f"failure_function={'set' if self.failure_function else None}, "
            f"verbose={self.verbose}, url={self.url!r}, base_url={self.base_url!r})"
        )
