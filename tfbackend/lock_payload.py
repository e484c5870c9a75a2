"""Parsing helpers for the JSON lock envelope sent with LOCK requests."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from tfbackend.errors import MissingFieldError, ParseError

LOCK_ID_FIELD = "ID"

# Envelope keys understood by :class:`LockInfo`; anything else lands in ``extra``.
_KNOWN_FIELDS = {
    "Operation": "operation",
    "Info": "info",
    "Who": "who",
    "Version": "version",
    "Created": "created",
    "Path": "path",
}


@dataclass(frozen=True, slots=True)
class LockInfo:
    """Minimal view of a lock envelope exposing the holder id."""

    id: str
    operation: Optional[str] = None
    info: Optional[str] = None
    who: Optional[str] = None
    version: Optional[str] = None
    created: Optional[str] = None
    path: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_bytes(cls, raw: bytes) -> "LockInfo":
        try:
            document = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ParseError(f"invalid lock payload: {exc}") from exc
        if not isinstance(document, dict):
            raise ParseError(
                f"invalid lock payload: expected a JSON object, got {type(document).__name__}"
            )
        if LOCK_ID_FIELD not in document:
            raise MissingFieldError(LOCK_ID_FIELD, raw)
        holder = document[LOCK_ID_FIELD]
        if not isinstance(holder, str):
            raise ParseError(f'invalid lock payload: "{LOCK_ID_FIELD}" must be a string')

        known: Dict[str, Optional[str]] = {}
        extra: Dict[str, Any] = {}
        for key, value in document.items():
            if key == LOCK_ID_FIELD:
                continue
            attr = _KNOWN_FIELDS.get(key)
            if attr is not None and (value is None or isinstance(value, str)):
                known[attr] = value
            else:
                extra[key] = value
        return cls(id=holder, extra=extra, **known)


def parse_lock_id(raw: bytes) -> str:
    """Return the holder id stored under the top-level ``ID`` key of ``raw``."""

    return LockInfo.from_bytes(raw).id


__all__ = ["LOCK_ID_FIELD", "LockInfo", "parse_lock_id"]
