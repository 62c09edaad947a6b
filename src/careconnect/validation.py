"""Input helpers shared by the intake and review workflows."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional, Union
from urllib.parse import urlparse

from .exceptions import ValidationError

TimestampLike = Union[datetime, date, str]


def utcnow() -> datetime:
    """Return the current UTC time as a naive :class:`~datetime.datetime`."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_timestamp(value: TimestampLike, *, field_name: str = "timestamp") -> datetime:
    """Convert ``value`` to a naive UTC :class:`~datetime.datetime`.

    ISO 8601 strings are accepted, with or without an offset. Aware values are
    converted to UTC before the offset is dropped.
    """

    if isinstance(value, datetime):
        result = value
    elif isinstance(value, date):
        result = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            result = datetime.fromisoformat(raw)
        except ValueError as exc:
            raise ValidationError(f"{field_name} is not a valid ISO 8601 timestamp.") from exc
    else:
        raise ValidationError(f"{field_name} must be a datetime or ISO 8601 string.")
    if result.tzinfo is not None:
        result = result.astimezone(timezone.utc).replace(tzinfo=None)
    return result


def require_text(value: object, field_name: str, *, min_length: int = 1) -> str:
    """Return ``value`` stripped, ensuring it is a string of ``min_length`` characters."""

    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string.")
    text = value.strip()
    if len(text) < min_length:
        if min_length <= 1:
            raise ValidationError(f"{field_name} cannot be empty.")
        raise ValidationError(f"{field_name} must be at least {min_length} characters.")
    return text


def optional_text(value: object, field_name: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string.")
    return value.strip() or None


def require_positive_int(value: object, field_name: str) -> int:
    """Ensure ``value`` is an integer of at least one."""

    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field_name} must be a whole number.")
    if value < 1:
        raise ValidationError(f"{field_name} must be at least 1.")
    return value


def require_url(value: object, field_name: str = "payment_link") -> str:
    """Ensure ``value`` is an absolute http(s) URL."""

    link = require_text(value, field_name)
    parsed = urlparse(link)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValidationError(f"{field_name} must be a valid http(s) URL.")
    return link


def add_years(moment: datetime, years: int) -> datetime:
    """Return ``moment`` shifted by ``years``, clamping 29 February to the 28th."""

    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        return moment.replace(year=moment.year + years, day=28)


__all__ = [
    "TimestampLike",
    "add_years",
    "optional_text",
    "require_positive_int",
    "require_text",
    "require_url",
    "to_timestamp",
    "utcnow",
]
