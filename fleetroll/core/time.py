"""Clock abstraction and deadline-bounded polling.

All engine waits go through a ``Clock`` so that warmup and bake periods are
suspension points that tests can drive without real sleeping.
"""

import time
from typing import Callable, Protocol


class Clock(Protocol):
    """Source of time and suspension."""

    def now(self) -> float:
        """Monotonic seconds, for deadlines."""

    def wall_time(self) -> float:
        """Epoch seconds, for timestamps."""

    def sleep(self, seconds: float) -> None:
        """Suspend the calling thread."""


class SystemClock:
    """Real clock backed by the time module."""

    def now(self) -> float:
        return time.monotonic()

    def wall_time(self) -> float:
        return time.time()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


def poll_until(
    clock: Clock,
    predicate: Callable[[], bool],
    timeout: float,
    interval: float,
) -> bool:
    """Evaluate ``predicate`` every ``interval`` seconds until it holds or ``timeout`` expires.

    The predicate is always evaluated once more at the deadline, so a zero
    timeout still performs a single check.

    Returns:
        True if the predicate held before the deadline, False otherwise
    """
    deadline = clock.now() + timeout
    while True:
        if predicate():
            return True
        remaining = deadline - clock.now()
        if remaining <= 0:
            return False
        clock.sleep(min(interval, remaining))
