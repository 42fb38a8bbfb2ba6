"""
Time helpers shared by every store.

All "time since the last event" checks (TTL expiry, circuit breaker
cooldown, conversation inactivity, LRU ordering) go through these functions
so that a single injectable clock drives them.
"""

import time
from typing import Callable

# Returns seconds since the epoch. Tests inject a controllable clock.
Clock = Callable[[], float]


def system_clock() -> float:
    """Wall-clock time in seconds.

    Wall time is used instead of a monotonic counter because expiry
    timestamps are persisted to Redis and disk and read by other processes.
    """
    return time.time()


def elapsed_since(started_at: float | None, now: float) -> float:
    """Seconds elapsed since ``started_at`` (0 when it is unknown or in the future)."""
    if started_at is None:
        return 0.0
    return max(0.0, now - started_at)


def has_elapsed(started_at: float | None, duration: float, now: float) -> bool:
    """True once at least ``duration`` seconds have passed since ``started_at``.

    An event that never happened counts as elapsed.
    """
    if started_at is None:
        return True
    return elapsed_since(started_at, now) >= duration


def is_expired(expires_at: float | None, now: float) -> bool:
    """True when ``now`` is past the expiry timestamp (``None`` never expires)."""
    if expires_at is None:
        return False
    return now > expires_at


def remaining_ttl(expires_at: float, now: float) -> float:
    """Seconds left before ``expires_at`` (never negative)."""
    return max(0.0, expires_at - now)


def to_millis(timestamp: float) -> int:
    return int(timestamp * 1000)
