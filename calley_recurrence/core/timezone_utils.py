"""Instant parsing and normalization utilities for calley_recurrence.

All instants handled by the engine are timezone-aware UTC datetimes. Callers
may hand in ISO-8601 strings (``Z`` or offset suffix) or datetimes; floating
(naive) values are read as UTC.
"""

from __future__ import annotations

import datetime
import logging
import os
from typing import Union

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)

UTC = datetime.timezone.utc

InstantLike = Union[str, datetime.datetime, datetime.date]

RRULE_UTC_FORMAT = "%Y%m%dT%H%M%SZ"


def now_utc() -> datetime.datetime:
    """Get current time in UTC, respecting the CALLEY_TEST_TIME override.

    Returns:
        Current datetime in UTC timezone
    """
    test_time = os.environ.get("CALLEY_TEST_TIME")
    if test_time:
        try:
            return parse_instant(test_time)
        except ValueError as e:
            logger.warning("Invalid CALLEY_TEST_TIME: %s, error: %s", test_time, e)

    return datetime.datetime.now(UTC)


def ensure_utc(dt: datetime.datetime) -> datetime.datetime:
    """Return ``dt`` as an aware UTC datetime (naive values are read as UTC)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def parse_instant(value: InstantLike) -> datetime.datetime:
    """Parse an ISO-8601 string, date or datetime into an aware UTC datetime.

    Args:
        value: ISO-8601 string, ``datetime`` or ``date`` (midnight UTC)

    Returns:
        Timezone-aware UTC datetime

    Raises:
        ValueError: If the value cannot be interpreted as an instant
    """
    if isinstance(value, datetime.datetime):
        return ensure_utc(value)
    if isinstance(value, datetime.date):
        return datetime.datetime.combine(value, datetime.time.min, tzinfo=UTC)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Not an ISO-8601 instant: {value!r}")

    try:
        parsed = date_parser.isoparse(value.strip())
    except (ValueError, OverflowError) as e:
        raise ValueError(f"Not an ISO-8601 instant: {value!r}") from e
    return ensure_utc(parsed)


def truncate_instant(dt: datetime.datetime) -> datetime.datetime:
    """Return ``dt`` as aware UTC at whole-second precision.

    Occurrence instants live at RFC-5545 DATE-TIME resolution; dateutil drops
    sub-seconds from a rule's anchor, so stored bounds must not carry them.
    """
    return ensure_utc(dt).replace(microsecond=0)


def serialize_instant(dt: datetime.datetime) -> str:
    """Serialize an instant to ISO-8601 UTC with millisecond precision and ``Z`` suffix."""
    utc_dt = ensure_utc(dt)
    return utc_dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc_dt.microsecond // 1000:03d}Z"


def format_rrule_utc(dt: datetime.datetime) -> str:
    """Format an instant as an RFC-5545 UTC DATE-TIME (``20260309T095959Z``).

    Sub-second precision is truncated, not rounded.
    """
    return ensure_utc(dt).strftime(RRULE_UTC_FORMAT)
