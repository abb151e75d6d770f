"""Rate oscillation shared by the background samplers.

The factor swings smoothly between 1 and 3 over one period, so sampler sleep
intervals (and therefore observation throughput) appear to breathe.
"""
from __future__ import annotations

import math
import time


class Oscillation:
    """factor(now) = 2 + sin(sin(2*pi*elapsed/period)), elapsed in seconds since start."""

    def __init__(self, period: float, start: float | None = None) -> None:
        if period <= 0:
            raise ValueError(f"oscillation period must be positive, got {period}")
        self.period = period
        self.start = time.monotonic() if start is None else start

    def factor(self, now: float | None = None) -> float:
        if now is None:
            now = time.monotonic()
        elapsed = now - self.start
        return 2 + math.sin(math.sin(2 * math.pi * elapsed / self.period))
