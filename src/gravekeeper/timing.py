"""Relative timers measured against a monotonic clock.

``TimeSince`` counts up from an event, ``TimeUntil`` counts down to one. Both
convert to ``float`` seconds, which is also how they are written to saves.
"""
from __future__ import annotations

import time
from typing import Callable

_clock: Callable[[], float] = time.monotonic


def now() -> float:
    return _clock()


class TimeSince:
    __slots__ = ("_start",)

    def __init__(self, seconds: float = 0.0) -> None:
        self._start = now() - float(seconds)

    @property
    def start(self) -> float:
        return self._start

    @property
    def relative(self) -> float:
        """Seconds elapsed since the event."""
        return now() - self._start

    def __float__(self) -> float:
        return self.relative

    def __repr__(self) -> str:
        return f"TimeSince({self.relative:.3f})"


class TimeUntil:
    __slots__ = ("_target",)

    def __init__(self, seconds: float = 0.0) -> None:
        self._target = now() + float(seconds)

    @property
    def target(self) -> float:
        return self._target

    @property
    def relative(self) -> float:
        """Seconds remaining; negative once the event has passed."""
        return self._target - now()

    @property
    def passed(self) -> bool:
        return self.relative <= 0

    def __float__(self) -> float:
        return self.relative

    def __repr__(self) -> str:
        return f"TimeUntil({self.relative:.3f})"
