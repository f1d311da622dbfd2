from datetime import datetime, timedelta, timezone


class Clock:
    """Source of "now" for event timestamps, record timestamps and deadlines."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Clock that only moves when told to. Used by tests and replays."""

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> datetime:
        self._now += timedelta(seconds=seconds)
        return self._now


SYSTEM_CLOCK = Clock()

_default_clock: Clock = SYSTEM_CLOCK


def default_clock() -> Clock:
    """Clock used wherever none is injected, e.g. event timestamps."""
    return _default_clock


def set_default_clock(clock: Clock) -> Clock:
    """Install ``clock`` process-wide and return the one it replaces."""
    global _default_clock
    previous, _default_clock = _default_clock, clock
    return previous


def utcnow() -> datetime:
    return _default_clock.now()
