from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime.datetime:
        """Return the current time as an aware UTC datetime."""


class SystemClock:
    def now(self) -> datetime.datetime:
        return datetime.datetime.now(datetime.timezone.utc)


@dataclass
class FixedClock:
    """A clock that only moves when told to."""

    current: datetime.datetime

    def now(self) -> datetime.datetime:
        return self.current

    def advance(self, **delta) -> datetime.datetime:
        self.current += datetime.timedelta(**delta)
        return self.current


__all__ = ["Clock", "SystemClock", "FixedClock"]
