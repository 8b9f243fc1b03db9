"""Millisecond wall clock used to drive KCP timers."""

import time


def iclock64() -> int:
    """Return the current time in milliseconds."""
    return time.time_ns() // 1_000_000


def iclock() -> int:
    """Return the current time in milliseconds, truncated to 32 bits."""
    return iclock64() & 0xFFFFFFFF