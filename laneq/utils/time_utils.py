# laneq/utils/time_utils.py
"""
laneq time helpers
------------------

 - Wall clock in seconds / nanoseconds (task stamps, job timestamps)
 - Monotonic clock for deadlines
 - Human duration parsing ("1m", "2h30m", "90s") used by config and the backoff schedule
 - Capped exponential backoff for infrastructure retries (broker pop loop)
 - Queue wait time derivation clamped at zero
"""

from __future__ import annotations

import re
import time
import random
import logging
from typing import Optional

LOG = logging.getLogger("laneq.utils.time_utils")

NS_PER_SECOND = 1_000_000_000

# -------------------------
# Core helpers
# -------------------------
def now_ts() -> float:
    """Unix timestamp (UTC) with float seconds."""
    return time.time()

def now_ns() -> int:
    """Current epoch time in nanoseconds."""
    return time.time_ns()

def monotonic_ts() -> float:
    """Monotonic timestamp (not affected by system clock changes)."""
    return time.monotonic()

def ns_to_seconds(ns: int) -> float:
    return ns / NS_PER_SECOND

# -------------------------
# Queue wait time
# -------------------------
def queue_wait_seconds(enqueued_at_ns: int, now: Optional[int] = None) -> float:
    """
    Seconds between a task's enqueue stamp and now.
    Clock skew between producer and consumer hosts can make this negative; it is clamped to 0.
    A missing stamp (0) also yields 0.
    """
    if not enqueued_at_ns:
        return 0.0
    current = now if now is not None else now_ns()
    delta = current - int(enqueued_at_ns)
    if delta < 0:
        LOG.debug("Negative queue wait (%dns), clamping to zero", delta)
        return 0.0
    return ns_to_seconds(delta)

# -------------------------
# Human duration parsing
# -------------------------
DURATION_PATTERN = re.compile(r"(\d+(?:\.\d+)?)([a-z]*)")
_FULL_DURATION = re.compile(r"(?:\d+(?:\.\d+)?[a-z]*)+")

_UNIT_SECONDS = {
    "": 1,
    "ms": 0.001,
    "s": 1,
    "sec": 1,
    "secs": 1,
    "seconds": 1,
    "m": 60,
    "min": 60,
    "mins": 60,
    "minute": 60,
    "minutes": 60,
    "h": 3600,
    "hr": 3600,
    "hour": 3600,
    "hours": 3600,
    "d": 86400,
    "day": 86400,
    "days": 86400,
}

def parse_duration(text: str) -> float:
    """
    Parse human-readable duration strings like:
    "5m", "2h30m", "1.5h", "90s", "600" (bare numbers are seconds).
    Raises ValueError on unknown units or text that is not a duration.
    """
    if text is None:
        raise ValueError("duration is required")
    cleaned = re.sub(r"\s+", "", str(text).lower())
    if not cleaned or not _FULL_DURATION.fullmatch(cleaned):
        raise ValueError(f"invalid duration {text!r}")
    total = 0.0
    for val, unit in DURATION_PATTERN.findall(cleaned):
        if unit not in _UNIT_SECONDS:
            raise ValueError(f"unknown duration unit {unit!r} in {text!r}")
        total += float(val) * _UNIT_SECONDS[unit]
    return total


def format_duration(seconds: float) -> str:
    """Format seconds into '1d2h3m4s'."""
    seconds = int(seconds)
    d, r = divmod(seconds, 86400)
    h, r = divmod(r, 3600)
    m, s = divmod(r, 60)
    parts = []
    if d: parts.append(f"{d}d")
    if h: parts.append(f"{h}h")
    if m: parts.append(f"{m}m")
    if s or not parts: parts.append(f"{s}s")
    return "".join(parts)

# -------------------------
# Backoff
# -------------------------
def compute_backoff(attempt: int, base: float = 0.5, factor: float = 2.0, jitter: float = 0.1, max_delay: float = 30.0) -> float:
    """
    Exponential backoff with jitter, capped at max_delay.
    attempt is 1-based.
    """
    attempt = max(1, int(attempt))
    delay = min(max_delay, base * (factor ** (attempt - 1)))
    if jitter:
        delay = delay * (1.0 + (random.random() - 0.5) * 2 * jitter)
    return max(0.0, min(max_delay, delay))


__all__ = [
    "NS_PER_SECOND",
    "now_ts",
    "now_ns",
    "monotonic_ts",
    "ns_to_seconds",
    "queue_wait_seconds",
    "parse_duration",
    "format_duration",
    "compute_backoff",
]
