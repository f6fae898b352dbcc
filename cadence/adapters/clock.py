"""System clock adapter."""

from datetime import datetime, timezone

from cadence.core.ports import ClockPort


class SystemClock(ClockPort):
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)
