"""Time utilities."""
from datetime import UTC, datetime, timedelta


def utcnow() -> datetime:
    """Return current UTC time with timezone awareness."""

    return datetime.now(tz=UTC)


def seconds_from_now(seconds: float) -> datetime:
    return utcnow() + timedelta(seconds=seconds)


__all__ = ["utcnow", "seconds_from_now"]
