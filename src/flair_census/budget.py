"""Time budget tracking and human-readable formatting helpers."""

from __future__ import annotations

import time
from collections.abc import Callable

TIMEOUT_FRACTION = 0.9

Clock = Callable[[], float]


def is_time_remaining(
    start: float,
    timeout_seconds: float,
    fraction: float = TIMEOUT_FRACTION,
    clock: Clock = time.monotonic,
) -> bool:
    """Return True while less than ``fraction`` of the timeout has elapsed since ``start``."""
    return clock() - start < timeout_seconds * fraction


class TimeBudget:
    """Per-chunk budget: stops at a fraction of the host's execution limit.

    The remaining share of the limit is headroom for checkpoint writes before
    the host terminates the invocation.
    """

    def __init__(
        self,
        timeout_seconds: float,
        fraction: float = TIMEOUT_FRACTION,
        clock: Clock = time.monotonic,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._fraction = fraction
        self._clock = clock
        self._start = clock()

    def remaining(self) -> bool:
        return is_time_remaining(self._start, self._timeout_seconds, self._fraction, self._clock)

    def remaining_seconds(self) -> float:
        return max(0.0, self._timeout_seconds * self._fraction - self.elapsed())

    def elapsed(self) -> float:
        return self._clock() - self._start


def format_duration(seconds: float) -> str:
    sec = int(max(0.0, seconds))
    if sec < 60:
        return f"{sec} sec"
    minutes = sec // 60
    if minutes < 60:
        return f"{minutes} min {sec % 60} sec"
    hours = minutes // 60
    return f"{hours} hr {minutes % 60} min"


def format_count(n: int) -> str:
    return f"{n:,}"
