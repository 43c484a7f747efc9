"""Timestamp helpers normalising stored and request timestamps to aware UTC."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


class TimestampError(ValueError):
    """Raised when a timestamp is missing or not ISO-8601 compatible."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to already be in UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not value or not isinstance(value, str):
        raise TimestampError("timestamp missing")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError as exc:
        raise TimestampError(f"timestamp {value!r} is not ISO-8601 compatible") from exc
    return ensure_utc(dt)


def parse_optional_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    return parse_timestamp(value)


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return ensure_utc(value).isoformat().replace("+00:00", "Z")
