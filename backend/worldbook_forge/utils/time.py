"""Millisecond wall-clock helpers used for task and history timestamps."""

from __future__ import annotations

import time


def now_ms() -> int:
    return int(time.time() * 1000)


def elapsed_ms(since_ms: int) -> int:
    """Milliseconds since ``since_ms``, never negative."""
    return max(0, now_ms() - since_ms)
