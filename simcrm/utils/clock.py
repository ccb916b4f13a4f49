"""Millisecond wall clock, injectable so tests can move time by hand."""

from __future__ import annotations

import time
from typing import Callable

Clock = Callable[[], int]


def system_clock() -> int:
    return int(time.time() * 1000)


class ManualClock:
    """Settable clock for tests and deterministic replays."""

    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


__all__ = ["Clock", "ManualClock", "system_clock"]
