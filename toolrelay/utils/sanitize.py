"""Redaction of sensitive values and JSON-safety sanitization of tool results."""

import dataclasses
import json
import re
from collections.abc import Mapping
from datetime import date, datetime, time
from enum import Enum
from typing import Any

from pydantic import BaseModel

REDACTED = "[REDACTED]"

SENSITIVE_KEY_PATTERNS = ("password", "pass", "pwd", "token", "secret", "key", "auth", "credential")

_SENSITIVE_TEXT_PATTERNS = [
    (re.compile(r"password[=:]\s*\S+", re.IGNORECASE), "password=[REDACTED]"),
    (re.compile(r"token[=:]\s*\S+", re.IGNORECASE), "token=[REDACTED]"),
    (re.compile(r"api_?key[=:]\s*\S+", re.IGNORECASE), "api_key=[REDACTED]"),
]


def is_sensitive_key(key: str) -> bool:
    """Check whether a field name looks like it holds a credential."""
    lowered = key.lower()
    return any(pattern in lowered for pattern in SENSITIVE_KEY_PATTERNS)


def sanitize(value: Any) -> Any:
    """Redact sensitive fields recursively so the value is safe to log or return.

    Mapping entries whose key matches a sensitive pattern are replaced with
    ``[REDACTED]``; strings have inline ``password=...`` style secrets masked.
    """
    if isinstance(value, BaseModel):
        return sanitize(value.model_dump(mode="json"))
    if isinstance(value, Mapping):
        return {
            key: REDACTED if is_sensitive_key(str(key)) else sanitize(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize(item) for item in value]
    if isinstance(value, str):
        for pattern, replacement in _SENSITIVE_TEXT_PATTERNS:
            value = pattern.sub(replacement, value)
        return value
    return value


def ensure_json_serializable(data: Any) -> Any:
    """Return a version of ``data`` that survives a JSON encode/decode cycle unchanged.

    Values that already round-trip are returned as-is. Otherwise leaves that
    JSON cannot represent are replaced with their string representation and a
    top-level mapping is tagged with ``_sanitized: True``.

    Raises:
        ValueError: If the data contains a circular reference.
        RecursionError: If the data is nested too deeply to walk.
    """
    try:
        if json.loads(json.dumps(data, allow_nan=False)) == data:
            return data
    except (TypeError, ValueError, RecursionError):
        pass

    sanitized = _sanitize_value(data, set())
    if isinstance(sanitized, dict):
        sanitized["_sanitized"] = True

    # Must hold after sanitizing; anything else is a bug in _sanitize_value
    json.dumps(sanitized, allow_nan=False)
    return sanitized


def _sanitize_value(value: Any, seen: set[int]) -> Any:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if value == value and value not in (float("inf"), float("-inf")) else str(value)
    if isinstance(value, Enum):
        return _sanitize_value(value.value, seen)
    if isinstance(value, BaseModel):
        return _sanitize_value(value.model_dump(mode="json"), seen)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return _sanitize_value(dataclasses.asdict(value), seen)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()

    if isinstance(value, (Mapping, list, tuple, set, frozenset)):
        marker = id(value)
        if marker in seen:
            raise ValueError("Circular reference detected in tool result")
        seen.add(marker)
        try:
            if isinstance(value, Mapping):
                return {_json_key(key): _sanitize_value(item, seen) for key, item in value.items()}
            return [_sanitize_value(item, seen) for item in value]
        finally:
            seen.discard(marker)

    return repr(value)


def _json_key(key: Any) -> str:
    if isinstance(key, str):
        return key
    if key is None or isinstance(key, (bool, int, float)):
        return json.dumps(key)
    return repr(key)
