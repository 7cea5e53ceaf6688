"""
Process-wide clock for feedback windows, version timestamps and breaker timeouts.

Everything in the loop reads time through :func:`now` so a replay or a test
can pin the whole loop to one instant with :func:`set_clock`.
"""
import time
from typing import Optional, Protocol, Tuple


class Clock(Protocol):
    def now(self) -> float:
        """Unix timestamp in seconds."""
        ...


class SystemClock:
    def now(self) -> float:
        return time.time()


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, timestamp: float):
        self._timestamp = float(timestamp)

    def now(self) -> float:
        return self._timestamp

    def advance(self, seconds: float) -> float:
        self._timestamp += seconds
        return self._timestamp


_clock: Clock = SystemClock()


def set_clock(clock: Clock):
    global _clock
    _clock = clock


def get_clock() -> Clock:
    return _clock


def now() -> float:
    return _clock.now()


def now_ms() -> int:
    """Milliseconds since the epoch; ULID timestamps use this."""
    return int(_clock.now() * 1000)


def trailing_window(seconds: float, end: Optional[float] = None) -> Tuple[float, float]:
    """
    Inclusive (start, end) window covering the last ``seconds`` up to ``end``.

    Args:
        seconds: Window length
        end: Window end, defaults to now()
    """
    window_end = now() if end is None else end
    return window_end - seconds, window_end
