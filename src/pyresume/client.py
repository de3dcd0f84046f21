"""
Out-of-band API for applications that drive workflows.

The client never talks to a workflow endpoint directly: a trigger is a
message published to the Durable Scheduler, which delivers it to the
endpoint like any other invocation.

Example:
    ```python
    client = Client(scheduler, store)
    run_id = await client.trigger("https://app.example.com/api/onboarding", {"userId": "u1"})

    # later, from a webhook
    await client.notify("payment-received:u1", {"amount": 42})
    ```
"""

import json
import logging
from typing import Any

from pyresume.executor.cancellation import cancel_run
from pyresume.executor.engine import new_run_id
from pyresume.executor.notify import notify as notify_waiters
from pyresume.models import NotifyResult, StepRecord, WorkflowRun
from pyresume.protocol import (
    CONTENT_TYPE_JSON,
    HEADER_PROTOCOL_VERSION,
    HEADER_RUN_ID,
    PROTOCOL_VERSION,
)
from pyresume.scheduler.base import DurableScheduler, Message
from pyresume.storage.base import ExecutionLog

logger = logging.getLogger(__name__)


class Client:
    """Trigger, notify, cancel and inspect workflow runs."""

    def __init__(self, scheduler: DurableScheduler, store: ExecutionLog):
        self.scheduler = scheduler
        self.store = store

    async def trigger(
        self,
        url: str,
        body: Any = None,
        run_id: str | None = None,
        headers: dict[str, str] | None = None,
        delay: float | None = None,
        retries: int | None = None,
    ) -> str:
        """
        Start a workflow run.

        Args:
            url: Workflow endpoint
            body: Trigger payload; bytes and str are sent as is, anything
                else as JSON
            run_id: Run id to use (generated when omitted)
            headers: Extra headers forwarded to the endpoint
            delay: Seconds before the first invocation
            retries: Delivery retries of the trigger message

        Returns:
            The run id
        """
        run_id = run_id or new_run_id()
        message_headers = dict(headers or {})
        message_headers[HEADER_PROTOCOL_VERSION] = PROTOCOL_VERSION
        message_headers[HEADER_RUN_ID] = run_id
        if body is None:
            payload = b""
        elif isinstance(body, bytes):
            payload = body
        elif isinstance(body, str):
            payload = body.encode("utf-8")
        else:
            payload = json.dumps(body).encode("utf-8")
            message_headers.setdefault("Content-Type", CONTENT_TYPE_JSON)

        message_id = await self.scheduler.publish(
            Message(
                url=url,
                body=payload,
                headers=message_headers,
                delay=delay,
                retries=retries,
                run_id=run_id,
            )
        )
        logger.info(f"Triggered run {run_id} at {url} ({message_id})")
        return run_id

    async def notify(self, event_id: str, event_data: Any = None) -> list[NotifyResult]:
        """Wake every run waiting on ``event_id``. See pyresume.executor.notify.notify()."""
        return await notify_waiters(self.store, self.scheduler, event_id, event_data)

    async def cancel(self, run_id: str) -> bool:
        """Cancel a RUNNING or WAITING run. Returns False if it was not cancelable."""
        return await cancel_run(self.store, self.scheduler, run_id)

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        return await self.store.get_run(run_id)

    async def get_steps(self, run_id: str) -> list[StepRecord]:
        return await self.store.get_steps(run_id)
