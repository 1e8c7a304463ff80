"""Miscellaneous helper functions."""

from __future__ import annotations

import calendar
import datetime as dt
import math
from typing import Any, Optional


def parse_iso_datetime(value: str | None) -> Optional[dt.datetime]:
    """Parse an ISO8601 datetime string into a naive UTC :class:`datetime`.

    ``datetime.fromisoformat`` on older interpreters does not accept a
    ``z`` designator, so that case is normalised.  Aware values are
    converted to UTC and stripped of their tzinfo; ``None`` is returned if
    the value cannot be parsed.
    """
    if not value:
        return None
    try:
        if value[-1] in ("z", "Z"):
            value = value[:-1] + "+00:00"
        parsed = dt.datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(dt.timezone.utc).replace(tzinfo=None)
    return parsed


def add_months(start: dt.date, months: int) -> dt.date:
    """Return ``start`` shifted by ``months`` calendar months.

    The day is clamped to the last day of the target month, so
    2024-01-31 + 1 month is 2024-02-29.
    """
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return dt.date(year, month, day)


def clamp_confidence(value: Any) -> Optional[float]:
    """Clamp a confidence score into ``[0, 1]`` rounded to two decimals.

    Missing, non-numeric and NaN values (and booleans) come back as
    ``None`` so a bad score never fails the surrounding operation.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number):
        return None
    return round(min(1.0, max(0.0, number)), 2)


def month_bounds(when: dt.datetime) -> tuple[dt.datetime, dt.datetime]:
    """Return the ``[start, end)`` datetimes of the calendar month of ``when``."""
    start = dt.datetime(when.year, when.month, 1)
    if when.month == 12:
        end = dt.datetime(when.year + 1, 1, 1)
    else:
        end = dt.datetime(when.year, when.month + 1, 1)
    return start, end
