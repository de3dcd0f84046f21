"""
Encoding of step results.

Step results are stored and shipped as compact JSON bytes. Replays decode
the exact bytes that were recorded, so a SUCCEEDED step always yields the
same value.
"""

import dataclasses
import json
from typing import Any

_SEPARATORS = (",", ":")


def _default(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_value(value: Any) -> bytes:
    """
    Encode a step or workflow result.

    Raises:
        TypeError: If the value cannot be represented as JSON
    """
    return json.dumps(value, separators=_SEPARATORS, default=_default).encode("utf-8")


def decode_value(data: bytes | None) -> Any:
    if data is None:
        return None
    return json.loads(data.decode("utf-8"))
