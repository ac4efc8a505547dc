# laneq/queue/retry.py
"""
Retry / backoff policy.

decide(retries) is a pure function of the job's retry count:

    retries < max_retries  -> Requeue(schedule[min(retries, len(schedule) - 1)])
    otherwise              -> Terminal

A non-retryable error (ValidationError) is Terminal regardless of the count.
The side effects (retries + 1, durable delayed put on the original lane) are
applied by the worker through the job store and the broker.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

from laneq.errors import is_retryable
from laneq.utils.time_utils import parse_duration

DEFAULT_MAX_RETRIES = 3
DEFAULT_SCHEDULE: Tuple[float, ...] = (60.0, 300.0, 900.0)


@dataclass(frozen=True)
class Requeue:
    delay: float


@dataclass(frozen=True)
class Terminal:
    reason: str = "retries exhausted"


Decision = Union[Requeue, Terminal]


def parse_schedule(spec: str) -> Tuple[float, ...]:
    """ "1m,5m,15m" -> (60.0, 300.0, 900.0) """
    schedule = tuple(parse_duration(p) for p in (spec or "").split(",") if p.strip())
    if not schedule:
        raise ValueError("backoff schedule must not be empty")
    return schedule


class RetryPolicy:
    def __init__(self, max_retries: int = DEFAULT_MAX_RETRIES, schedule: Sequence[float] = DEFAULT_SCHEDULE):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        schedule = tuple(float(d) for d in schedule)
        if not schedule:
            raise ValueError("backoff schedule must not be empty")
        if any(d <= 0 for d in schedule):
            raise ValueError("backoff delays must be positive")
        self.max_retries = int(max_retries)
        self.schedule = schedule

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(max_retries=settings.max_retries, schedule=settings.backoff)

    def delay_for(self, retries: int) -> float:
        return self.schedule[min(max(retries, 0), len(self.schedule) - 1)]

    def decide(self, retries: int, exc: Optional[BaseException] = None) -> Decision:
        if exc is not None and not is_retryable(exc):
            return Terminal(reason=f"non-retryable {exc.__class__.__name__}")
        if retries < self.max_retries:
            return Requeue(delay=self.delay_for(retries))
        return Terminal()

    def __repr__(self) -> str:
        return f"RetryPolicy(max_retries={self.max_retries}, schedule={list(self.schedule)})"


__all__ = ["RetryPolicy", "Requeue", "Terminal", "Decision", "parse_schedule", "DEFAULT_MAX_RETRIES", "DEFAULT_SCHEDULE"]
