from __future__ import annotations

import hashlib
from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID

import rfc8785
from pydantic import BaseModel

_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def to_json_primitive(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Recursively convert run-state values into JSON-primitive types.

    Pydantic models are dumped in JSON mode, enums collapse to their values,
    sets become sorted lists so that union-reduced fields snapshot identically
    regardless of insertion order.

    Raises:
        TypeError: If value contains a type that cannot be represented as JSON.
    """
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value

    if isinstance(value, Enum):
        return to_json_primitive(value.value)

    if isinstance(value, BaseModel):
        return to_json_primitive(value.model_dump(mode="json"))

    if isinstance(value, dict):
        return {str(k): to_json_primitive(v) for k, v in value.items()}

    if isinstance(value, (set, frozenset)):
        return sorted((to_json_primitive(item) for item in value), key=rfc8785.dumps)

    if isinstance(value, (list, tuple)):
        return [to_json_primitive(item) for item in value]

    if isinstance(value, (datetime, date)):
        return value.isoformat()

    if isinstance(value, UUID):
        return str(value)

    raise TypeError(
        f"Cannot store type {type(value).__name__} in run state. "
        f"Convert to a JSON-compatible type first."
    )


def to_canonical_json(value: Any) -> str:
    """Serialize a value to deterministic, byte-for-byte reproducible JSON per RFC 8785."""
    return rfc8785.dumps(to_json_primitive(value)).decode("utf-8")


def state_digest(state: dict[str, Any]) -> str:
    """SHA-256 hex digest of the canonical form of a run-state snapshot."""
    return hashlib.sha256(to_canonical_json(state).encode("utf-8")).hexdigest()
