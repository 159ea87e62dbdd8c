"""
Small time and serialization helpers shared across the pipeline.
"""

import json
from datetime import datetime, timezone
from typing import Any


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_isoformat(value: datetime) -> str:
    """Fixed-width UTC ISO-8601 representation, e.g. 2026-01-02T03:04:05.000006Z."""
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_iso8601(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp.

    Raises:
        ValueError: If the string is not ISO-8601
    """
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def to_jsonable(value: Any) -> Any:
    """
    Normalize a value to what a JSON document store would hand back.

    Non-JSON types (datetimes, UUIDs, enums) become strings so that
    hashes computed before and after a store round-trip agree.
    """
    return json.loads(json.dumps(value, default=str))


def serialize_payload(value: Any) -> str:
    """Compact JSON text of a payload, used for pattern matching and size checks."""
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)
