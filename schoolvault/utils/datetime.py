# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""DateTime utilities for SchoolVault.

All timestamps are stored in UTC and all Python datetimes are
timezone-aware. Snapshot payloads carry dates and datetimes as
ISO 8601 strings; the helpers below convert in both directions.

Usage:
------
    from schoolvault.utils.datetime import utc_now

    # For SQLAlchemy model defaults
    created_at = mapped_column(DateTime(timezone=True), default=utc_now)
"""

from datetime import date, datetime, timezone


def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime.

    Returns:
        Timezone-aware datetime representing current UTC time.
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Ensure a datetime is timezone-aware UTC.

    Args:
        dt: A datetime object (naive or aware) or None.

    Returns:
        Timezone-aware UTC datetime or None. Naive values are assumed UTC.
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def format_iso(value: datetime | date | None) -> str | None:
    """Format a datetime or date as an ISO 8601 string.

    Args:
        value: Datetime or date to format.

    Returns:
        ISO 8601 formatted string or None.
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()

    return value.isoformat()


def parse_iso(value: str | datetime | None) -> datetime | None:
    """Parse an ISO 8601 datetime string.

    Args:
        value: ISO 8601 formatted string, or an already parsed datetime.

    Returns:
        Timezone-aware UTC datetime or None for empty input.

    Raises:
        ValueError: If the string is not valid ISO 8601.
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        return ensure_utc(value)

    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return ensure_utc(dt)


def parse_iso_date(value: str | date | None) -> date | None:
    """Parse the date part of an ISO 8601 date or datetime string.

    Args:
        value: ISO 8601 string such as "2014-03-09" or "2014-03-09T00:00:00Z".

    Returns:
        Date or None for empty input.
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        return value.date()

    if isinstance(value, date):
        return value

    return date.fromisoformat(value[:10])
