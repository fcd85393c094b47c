"""
Timestamp normalisation.

Records written by older clients carry dates in several shapes:

  "2024-03-01"                              ISO date
  "2024-03-01T10:15:00.000Z"                ISO datetime (any offset, or naive)
  {"seconds": 1709287200, "nanos": 0}       store timestamp
  {"_seconds": 1709287200, "_nanoseconds": 0}  serialised store timestamp
  1709287200                                epoch seconds

Every shape is turned into a timezone-aware UTC ``datetime`` as soon as a
record is validated, so business logic only ever compares datetimes.
"""
from datetime import date, datetime, timedelta, timezone
from typing import Annotated, Any, Optional

from pydantic import BeforeValidator


def to_instant(value: Any) -> Optional[datetime]:
    """Return *value* as an aware UTC datetime, or None for empty values."""
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)

    if isinstance(value, bool):
        raise ValueError(f"Not a timestamp: {value!r}")

    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)

    if isinstance(value, dict):
        seconds = value.get("seconds", value.get("_seconds"))
        if seconds is None:
            raise ValueError(f"Timestamp map has no seconds field: {value!r}")
        nanos = value.get("nanos", value.get("nanoseconds", value.get("_nanoseconds", 0))) or 0
        return (
            datetime.fromtimestamp(int(seconds), tz=timezone.utc)
            + timedelta(microseconds=int(nanos) // 1000)
        )

    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
        return to_instant(parsed)

    raise ValueError(f"Unsupported timestamp value: {value!r}")


def _validate_instant(value: Any) -> Any:
    instant = to_instant(value)
    # Let pydantic report the missing value on non-optional fields
    return value if instant is None else instant


Instant = Annotated[datetime, BeforeValidator(_validate_instant)]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def month_key(instant: datetime) -> str:
    """Calendar bucket used by monthly evolution series, e.g. '2024-03'."""
    return f"{instant.year:04d}-{instant.month:02d}"
