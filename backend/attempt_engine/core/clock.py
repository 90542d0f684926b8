"""Server clock.

All elapsed-time decisions go through ``utcnow()`` so the server clock is the
only authority (and tests can pin it with monkeypatch).
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return the current server time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from backends without tz support (SQLite)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
