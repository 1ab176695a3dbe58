import time
from datetime import timedelta
from typing import Callable, Union


Seconds = Union[float, int, timedelta]


def _as_seconds(value: Seconds) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


class ExecutionBudget:
    """Wall-clock allowance for a single invocation.

    The budget starts when it is constructed. ``expired()`` turns true once
    the elapsed time reaches ``hard_limit - safety_buffer``; the buffer has to
    cover persisting state, scheduling a continuation and the worst case of
    one item's processing started just before expiry.
    """

    def __init__(
        self,
        hard_limit: Seconds,
        safety_buffer: Seconds,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._hard_limit = _as_seconds(hard_limit)
        self._safety_buffer = _as_seconds(safety_buffer)
        if self._hard_limit <= 0:
            raise ValueError("hard_limit must be positive")
        if self._safety_buffer < 0 or self._safety_buffer >= self._hard_limit:
            raise ValueError("safety_buffer must be non-negative and below hard_limit")
        self._clock = clock
        self._started = clock()

    @property
    def usable(self) -> timedelta:
        return timedelta(seconds=self._hard_limit - self._safety_buffer)

    def elapsed(self) -> timedelta:
        return timedelta(seconds=self._clock() - self._started)

    def remaining(self) -> timedelta:
        left = self.usable - self.elapsed()
        if left < timedelta(0):
            return timedelta(0)
        return left

    def expired(self) -> bool:
        return self.elapsed() >= self.usable
