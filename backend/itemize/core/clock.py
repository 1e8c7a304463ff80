"""Time source used by TTL and staleness checks.

Timestamps are stored as naive UTC datetimes, so ``now()`` returns one.
"""

from __future__ import annotations

import datetime as dt
from typing import Protocol


class Clock(Protocol):
    def now(self) -> dt.datetime: ...


class SystemClock:
    def now(self) -> dt.datetime:
        return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


system_clock = SystemClock()
