"""Bounded, blocking poll for an external precondition."""
from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path

Clock = Callable[[], float]
Sleeper = Callable[[float], None]


def wait_for(
    predicate: Callable[[], bool],
    max_wait: float,
    poll_interval: float,
    *,
    clock: Clock = time.monotonic,
    sleep: Sleeper = time.sleep,
    on_poll: Callable[[float], None] | None = None,
) -> bool:
    """Poll *predicate* until it holds or *max_wait* seconds elapse.

    The predicate is evaluated immediately and then after each sleep. The
    final sleep is shortened to the remaining budget so the call returns
    ``False`` no sooner than *max_wait* and no later than one poll interval
    after it. *on_poll* receives the elapsed seconds before every sleep.
    """
    if poll_interval <= 0:
        raise ValueError("poll_interval must be greater than zero.")
    if max_wait < 0:
        raise ValueError("max_wait must be non-negative.")

    start = clock()
    while True:
        if predicate():
            return True
        elapsed = clock() - start
        remaining = max_wait - elapsed
        if remaining <= 0:
            return False
        if on_poll is not None:
            on_poll(elapsed)
        sleep(min(poll_interval, remaining))


def path_exists(path: Path) -> Callable[[], bool]:
    """Return a predicate that is true once *path* exists."""
    return path.exists


__all__ = ["Clock", "Sleeper", "path_exists", "wait_for"]
