"""Helpers for the JSON form of model objects.

Bytes travel as base64 text and datetimes as ISO 8601 strings, both in
the continuation envelope and in the Redis backend.
"""

import base64
from datetime import datetime


def b64encode(data: bytes | None) -> str | None:
    if data is None:
        return None
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str | None) -> bytes | None:
    if text is None:
        return None
    return base64.b64decode(text.encode("ascii"), validate=True)


def dt_to_str(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def dt_from_str(text: str | None) -> datetime | None:
    return datetime.fromisoformat(text) if text is not None else None
