"""
FailureContext: what the Failure Handler learns about a failed step.

The JSON form is the failure callback payload ``{"status", "header", "body"}``.
"""

import json
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class FailureContext:
    """
    Status code, headers and body of the failure that ended a step or run.

    For a RUN step or workflow exception the status is 500 and the body is
    the JSON error ``{"error": <type>, "message": <text>}``. For a CALL
    step these are the third-party response fields.
    """

    status: int
    header: dict[str, list[str]] = field(default_factory=dict)
    body: str = ""
    step_name: str | None = None

    @classmethod
    def from_exception(cls, exc: BaseException, step_name: str | None = None) -> "FailureContext":
        body = json.dumps({"error": type(exc).__name__, "message": str(exc)})
        return cls(status=500, header={}, body=body, step_name=step_name)

    @property
    def message(self) -> str:
        """Best-effort human readable error text."""
        try:
            parsed = json.loads(self.body)
        except (json.JSONDecodeError, TypeError):
            return self.body
        if isinstance(parsed, dict) and "message" in parsed:
            return f"{parsed.get('error', 'Error')}: {parsed['message']}"
        return self.body

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "header": self.header, "body": self.body}

    def to_json(self) -> str:
        data = self.to_dict()
        if self.step_name is not None:
            data["stepName"] = self.step_name
        return json.dumps(data)

    @classmethod
    def from_json(cls, text: str) -> "FailureContext":
        data = json.loads(text)
        return cls(
            status=int(data["status"]),
            header={k: list(v) for k, v in (data.get("header") or {}).items()},
            body=data.get("body", ""),
            step_name=data.get("stepName"),
        )

    def __str__(self) -> str:
        return f"status {self.status}: {self.message}"
