"""Common time helpers shared by the ledger, engine and log viewer."""

from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def from_iso(value: str) -> datetime:
    """Parse ISO datetime and ensure timezone-aware UTC fallback."""

    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def parse_iso(value: object) -> datetime | None:
    """Lenient variant of `from_iso` for values read from untrusted JSON."""

    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return from_iso(value.strip())
    except ValueError:
        return None


def to_iso(value: datetime) -> str:
    """Render a timestamp as ISO-8601 UTC with millisecond precision and `Z` suffix."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    rendered = value.astimezone(UTC).isoformat(timespec="milliseconds")
    return rendered.replace("+00:00", "Z")


def file_timestamp(value: datetime) -> str:
    """Filesystem-safe timestamp used in log file names."""

    return to_iso(value).replace(":", "-").replace(".", "-")
