"""
HttpScheduler - client for a QStash-style scheduler REST API.

Endpoints used:
- POST {base_url}/v2/publish/{destination}
- POST {base_url}/v2/batch
- DELETE {base_url}/v2/messages?label={run_id}

Delivery options travel as ``Upstash-*`` headers; headers meant for the
destination are prefixed with ``Upstash-Forward-`` and headers meant for a
callback with ``Upstash-Callback-Forward-`` / ``Upstash-Failure-Callback-Forward-``.
"""

from __future__ import annotations

import logging
import math
import os
from typing import Any

import httpx

from pyresume.scheduler.base import DurableScheduler, Message, SchedulerError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://qstash.upstash.io"


def message_headers(message: Message) -> dict[str, str]:
    """Translate a Message into publish request headers."""
    headers: dict[str, str] = {"Upstash-Method": message.method.upper()}
    if message.not_before is not None:
        headers["Upstash-Not-Before"] = str(math.ceil(message.not_before.timestamp()))
    elif message.delay:
        # whole seconds only; round up so nothing is delivered early
        headers["Upstash-Delay"] = f"{math.ceil(message.delay)}s"
    if message.retries is not None:
        headers["Upstash-Retries"] = str(message.retries)
    if message.callback:
        headers["Upstash-Callback"] = message.callback
    if message.failure_callback:
        headers["Upstash-Failure-Callback"] = message.failure_callback
    if message.run_id:
        headers["Upstash-Label"] = message.run_id

    for name, value in message.headers.items():
        if name.lower() == "content-type":
            headers["Content-Type"] = value
        else:
            headers[f"Upstash-Forward-{name}"] = value
    for name, value in message.callback_headers.items():
        if message.callback:
            headers[f"Upstash-Callback-Forward-{name}"] = value
        if message.failure_callback:
            headers[f"Upstash-Failure-Callback-Forward-{name}"] = value
    return headers


class HttpScheduler(DurableScheduler):
    """
    Publishes messages through a hosted scheduler over HTTP.

    Usage:
        scheduler = HttpScheduler(token=os.environ["QSTASH_TOKEN"])
        message_id = await scheduler.publish(Message(url="https://example.com/api/workflow"))
    """

    def __init__(
        self,
        token: str,
        base_url: str = DEFAULT_BASE_URL,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        if not token:
            raise ValueError("token must not be empty")
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._auth = {"Authorization": f"Bearer {token}"}

    @classmethod
    def from_env(cls, client: httpx.AsyncClient | None = None) -> HttpScheduler:
        """
        Build a scheduler from QSTASH_TOKEN and QSTASH_URL.

        Raises:
            ValueError: If QSTASH_TOKEN is not set
        """
        token = os.getenv("QSTASH_TOKEN")
        if not token:
            raise ValueError("QSTASH_TOKEN is not set")
        return cls(token, base_url=os.getenv("QSTASH_URL") or DEFAULT_BASE_URL, client=client)

    def __repr__(self) -> str:
        return f"HttpScheduler({self._base_url})"

    async def publish(self, message: Message) -> str:
        data = await self._request(
            "POST",
            f"/v2/publish/{message.url}",
            headers=message_headers(message),
            content=message.body,
        )
        try:
            return data["messageId"]
        except (KeyError, TypeError) as e:
            raise SchedulerError(f"Unexpected publish response: {data!r}") from e

    async def batch_publish(self, messages: list[Message]) -> list[str]:
        if not messages:
            return []
        batch = [
            {
                "destination": message.url,
                "headers": message_headers(message),
                "body": message.body.decode("utf-8"),
            }
            for message in messages
        ]
        data = await self._request("POST", "/v2/batch", json=batch)
        try:
            ids = [item["messageId"] for item in data]
        except (KeyError, TypeError) as e:
            raise SchedulerError(f"Unexpected batch response: {data!r}") from e
        if len(ids) != len(messages):
            raise SchedulerError(f"Batch published {len(ids)} of {len(messages)} messages")
        return ids

    async def cancel(self, run_id: str) -> int:
        data = await self._request("DELETE", "/v2/messages", params={"label": run_id})
        canceled = int((data or {}).get("cancelled", 0))
        logger.info(f"Canceled {canceled} scheduled message(s) for run {run_id}")
        return canceled

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        headers = {**self._auth, **kwargs.pop("headers", {})}
        try:
            response = await self._client.request(
                method, f"{self._base_url}{path}", headers=headers, **kwargs
            )
        except httpx.HTTPError as e:
            raise SchedulerError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            raise SchedulerError(
                f"{method} {path} returned {response.status_code}: {response.text}"
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise SchedulerError(f"{method} {path} returned invalid JSON") from e
