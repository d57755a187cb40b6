"""Shared parsing utilities for aggregator payloads.

Centralises the date, datetime and money parsing the GoCardless client
needs: ISO 8601 strings with assorted offsets, date-only strings, and
amounts that arrive as JSON strings.
"""

from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation


def parse_iso_datetime(value) -> datetime | None:
    """Parse an ISO 8601 string (or date/datetime object) to a UTC-aware datetime.

    Handles:
    - Z suffix ("2024-01-15T10:30:00Z")
    - +0000 no-colon offset ("2024-01-15T10:30:00+0000")
    - Standard ISO with colon offset ("2024-06-28T18:42:46.123456+00:00")
    - Date-only strings ("2024-06-28")
    - datetime/date objects passed through with UTC normalisation

    Args:
        value: A string, date, datetime, or None.

    Returns:
        A timezone-aware UTC datetime, or None if the value cannot be parsed.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)

    value_str = str(value).strip()
    if not value_str:
        return None

    if value_str.endswith("Z"):
        value_str = value_str[:-1] + "+00:00"

    if (
        len(value_str) >= 5
        and value_str[-5] in ("+", "-")
        and value_str[-4:].isdigit()
        and "T" in value_str
    ):
        value_str = value_str[:-2] + ":" + value_str[-2:]

    try:
        return ensure_utc(datetime.fromisoformat(value_str))
    except (ValueError, TypeError):
        pass

    parsed = parse_iso_date(value)
    if parsed is None:
        return None
    return datetime(parsed.year, parsed.month, parsed.day, tzinfo=timezone.utc)


def parse_iso_date(value) -> date | None:
    """Parse a ``YYYY-MM-DD`` string (or date/datetime) to a date."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except (ValueError, TypeError):
        return None


def parse_decimal(value) -> Decimal | None:
    """Parse a JSON number or numeric string to Decimal.

    Floats go through ``str`` first so ``0.1`` stays ``Decimal("0.1")``.
    """
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None


def parse_int(value, default: int | None = None) -> int | None:
    """Parse an integer that the API may send as a string (``"90"``)."""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        return default


def ensure_utc(dt: datetime) -> datetime:
    """Ensure a datetime is timezone-aware (UTC).

    SQLite hands back naive datetimes even for values stored aware, so
    anything read from the database goes through here before comparison.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt
