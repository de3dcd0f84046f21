"""
Wire protocol between the Durable Scheduler and the workflow endpoint.

Three kinds of inbound requests reach the endpoint:

- TRIGGER: the first invocation. The body is the user's payload and
  ``Workflow-Init`` is absent (or not "false").
- CONTINUATION: a self-invocation published by the engine. The body is the
  envelope ``{"runId", "token", "steps", "delivery"}``.
- CALLBACK: the scheduler reporting the response of a CALL step. The body
  is ``{"status", "header", "body" (base64), "retried"}`` and the routing
  lives in the forwarded ``Workflow-*`` headers.

Header names compare case-insensitively.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pyresume.core.errors import ProtocolError
from pyresume.models import CallResponse, StepRecord

PROTOCOL_VERSION = "1"

# Engine protocol headers
HEADER_PROTOCOL_VERSION = "Workflow-Protocol-Version"
HEADER_RUN_ID = "Workflow-Run-Id"
HEADER_INIT = "Workflow-Init"
HEADER_CALLBACK = "Workflow-Callback"
HEADER_STEP_NAME = "Workflow-Step-Name"
HEADER_STEP_OCCURRENCE = "Workflow-Step-Occurrence"

# Delivery metadata headers set by the scheduler
HEADER_MESSAGE_ID = "Upstash-Message-Id"
HEADER_RETRIED = "Upstash-Retried"
HEADER_SIGNATURE = "Upstash-Signature"

CONTENT_TYPE_JSON = "application/json"


class RequestKind(Enum):
    TRIGGER = "TRIGGER"
    CONTINUATION = "CONTINUATION"
    CALLBACK = "CALLBACK"

    def __str__(self) -> str:
        return self.value


class DeliveryType(Enum):
    """What a continuation message delivers besides the ledger snapshot."""

    SLEEP = "sleep"
    """Wake-up of a SLEEP or SLEEP_UNTIL step; completes the step."""

    TIMEOUT = "timeout"
    """Timeout of a WAIT_FOR_EVENT step; completes it if the waiter is still PENDING."""

    NOTIFY = "notify"
    """Wake-up after notify claimed the waiter; completes the wait with the event data."""

    PLAN = "plan"
    """Execute one member of a parallel batch (the message token owns it)."""

    RETRY = "retry"
    """Re-run after a failed attempt (the message token owns the step, if any)."""

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Delivery:
    type: DeliveryType
    step_name: str | None = None
    occurrence: int | None = None
    event_id: str | None = None

    @property
    def step_key(self) -> tuple[str, int] | None:
        if self.step_name is None or self.occurrence is None:
            return None
        return (self.step_name, self.occurrence)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "stepName": self.step_name,
            "occurrence": self.occurrence,
            "eventId": self.event_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Delivery:
        occurrence = data.get("occurrence")
        return cls(
            type=DeliveryType(data["type"]),
            step_name=data.get("stepName"),
            occurrence=int(occurrence) if occurrence is not None else None,
            event_id=data.get("eventId"),
        )


@dataclass
class Envelope:
    """Body of a continuation message."""

    run_id: str
    token: str
    steps: list[StepRecord] = field(default_factory=list)
    delivery: Delivery | None = None

    def to_bytes(self) -> bytes:
        return json.dumps(
            {
                "runId": self.run_id,
                "token": self.token,
                "steps": [record.to_dict() for record in self.steps],
                "delivery": self.delivery.to_dict() if self.delivery else None,
            }
        ).encode("utf-8")

    @classmethod
    def from_bytes(cls, body: bytes) -> Envelope:
        """
        Parse an envelope.

        Raises:
            ProtocolError: If the body is not a well-formed envelope
        """
        try:
            data = json.loads(body.decode("utf-8"))
            if not isinstance(data, dict):
                raise ValueError("envelope must be a JSON object")
            run_id = data["runId"]
            token = data["token"]
            if not isinstance(run_id, str) or not isinstance(token, str):
                raise ValueError("runId and token must be strings")
            steps = [StepRecord.from_dict(item) for item in data.get("steps") or []]
            delivery = data.get("delivery")
            return cls(
                run_id=run_id,
                token=token,
                steps=steps,
                delivery=Delivery.from_dict(delivery) if delivery else None,
            )
        except (UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
            raise ProtocolError(f"Malformed workflow envelope: {e}") from e


@dataclass(frozen=True)
class CallbackPayload:
    """A CALL step response delivered back by the scheduler."""

    run_id: str
    step_name: str
    occurrence: int
    response: CallResponse
    retried: int = 0


class Headers:
    """Case-insensitive header lookup over a plain mapping."""

    def __init__(self, headers: dict[str, str] | None = None):
        self._headers = {k.lower(): v for k, v in (headers or {}).items()}

    def get(self, name: str, default: str | None = None) -> str | None:
        return self._headers.get(name.lower(), default)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._headers

    def items(self):
        return self._headers.items()


@dataclass
class WorkflowRequest:
    """An inbound HTTP request, independent of the web framework."""

    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    method: str = "POST"

    def header(self, name: str) -> str | None:
        return Headers(self.headers).get(name)


@dataclass
class WorkflowResponse:
    status: int
    body: dict[str, Any] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=lambda: {"Content-Type": CONTENT_TYPE_JSON})

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def content(self) -> bytes:
        return json.dumps(self.body).encode("utf-8")


@dataclass
class ParsedRequest:
    kind: RequestKind
    run_id: str | None
    message_id: str | None
    payload: bytes = b""
    envelope: Envelope | None = None
    callback: CallbackPayload | None = None


def parse_request(request: WorkflowRequest) -> ParsedRequest:
    """
    Classify and parse an inbound request.

    Raises:
        ProtocolError: If the request cannot be understood
    """
    headers = Headers(request.headers)
    if request.method.upper() != "POST":
        raise ProtocolError(f"Workflow endpoint only accepts POST, got {request.method}")

    version = headers.get(HEADER_PROTOCOL_VERSION)
    if version is not None and version != PROTOCOL_VERSION:
        raise ProtocolError(f"Unsupported {HEADER_PROTOCOL_VERSION}: {version!r}")

    message_id = headers.get(HEADER_MESSAGE_ID)
    run_id = headers.get(HEADER_RUN_ID)

    if (headers.get(HEADER_CALLBACK) or "").lower() == "true":
        return ParsedRequest(
            kind=RequestKind.CALLBACK,
            run_id=run_id,
            message_id=message_id,
            callback=_parse_callback(headers, request.body),
        )

    if (headers.get(HEADER_INIT) or "").lower() == "false":
        envelope = Envelope.from_bytes(request.body)
        if run_id is not None and run_id != envelope.run_id:
            raise ProtocolError(
                f"{HEADER_RUN_ID} {run_id!r} does not match envelope run {envelope.run_id!r}"
            )
        return ParsedRequest(
            kind=RequestKind.CONTINUATION,
            run_id=envelope.run_id,
            message_id=message_id,
            envelope=envelope,
        )

    return ParsedRequest(
        kind=RequestKind.TRIGGER,
        run_id=run_id,
        message_id=message_id,
        payload=request.body,
    )


def _parse_callback(headers: Headers, body: bytes) -> CallbackPayload:
    run_id = headers.get(HEADER_RUN_ID)
    step_name = headers.get(HEADER_STEP_NAME)
    occurrence = headers.get(HEADER_STEP_OCCURRENCE)
    if not run_id or not step_name or occurrence is None:
        raise ProtocolError(
            f"Callback is missing {HEADER_RUN_ID}, {HEADER_STEP_NAME} "
            f"or {HEADER_STEP_OCCURRENCE}"
        )
    try:
        data = json.loads(body.decode("utf-8"))
        raw_body = data.get("body") or ""
        response = CallResponse(
            status=int(data["status"]),
            header={k: list(v) for k, v in (data.get("header") or {}).items()},
            body=base64.b64decode(raw_body).decode("utf-8", errors="replace"),
        )
        return CallbackPayload(
            run_id=run_id,
            step_name=step_name,
            occurrence=int(occurrence),
            response=response,
            retried=int(data.get("retried", 0)),
        )
    except (UnicodeDecodeError, ValueError, KeyError, TypeError, AttributeError, binascii.Error) as e:
        raise ProtocolError(f"Malformed call callback: {e}") from e


def continuation_headers(run_id: str) -> dict[str, str]:
    """Headers of every self-invocation published by the engine."""
    return {
        HEADER_PROTOCOL_VERSION: PROTOCOL_VERSION,
        HEADER_RUN_ID: run_id,
        HEADER_INIT: "false",
        "Content-Type": CONTENT_TYPE_JSON,
    }


def callback_headers(run_id: str, step_name: str, occurrence: int) -> dict[str, str]:
    """Headers the scheduler forwards with a CALL step's callback."""
    return {
        HEADER_PROTOCOL_VERSION: PROTOCOL_VERSION,
        HEADER_RUN_ID: run_id,
        HEADER_INIT: "false",
        HEADER_CALLBACK: "true",
        HEADER_STEP_NAME: step_name,
        HEADER_STEP_OCCURRENCE: str(occurrence),
        "Content-Type": CONTENT_TYPE_JSON,
    }


def callback_body(status: int, header: dict[str, list[str]], body: bytes, retried: int) -> bytes:
    """Callback body in the shape the scheduler posts for a proxied call."""
    return json.dumps(
        {
            "status": status,
            "header": header,
            "body": base64.b64encode(body).decode("ascii"),
            "retried": retried,
        }
    ).encode("utf-8")


def response_body(run_id: str | None, status: str, detail: str | None = None) -> dict[str, Any]:
    return {"runId": run_id, "status": status, "detail": detail}
