from datetime import datetime, timezone
import time
from typing import Callable, Optional


class TimeBudget:
    """Wall-clock allowance for one invocation, polled cooperatively.

    The clock returns seconds (time.perf_counter by default); limits and
    elapsed values are reported in milliseconds.
    """

    def __init__(self, limit_ms: float, clock: Optional[Callable[[], float]] = None):
        self.limit_ms = limit_ms
        self._clock = clock or time.perf_counter
        self._started = self._clock()

    def elapsed_ms(self) -> float:
        return (self._clock() - self._started) * 1000.0

    def remaining_ms(self) -> float:
        return self.limit_ms - self.elapsed_ms()

    def exhausted(self) -> bool:
        return self.remaining_ms() < 0


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
