# laneq/errors.py
"""
laneq error taxonomy
--------------------

Every failure the core can produce maps onto one of these classes:

 - ValidationError   -> malformed payload or unregistered task type (never retried)
 - TransientError    -> handler raised or exceeded its deadline (retried per policy)
 - BrokerUnavailable -> Redis unreachable on put/pop (surfaced to callers / pop loop backs off)
 - TerminalFailure   -> retries exhausted (job stays failed until a manual retry)
 - JobNotFound / InvalidTransition -> job store errors for the outer API layer
"""

from __future__ import annotations

from typing import Optional


class LaneqError(Exception):
    """Base exception for the laneq core."""
    pass


class ValidationError(LaneqError):
    """Payload or task type can never succeed; the job goes straight to failed."""
    retryable = False


class TransientError(LaneqError):
    """A single attempt failed; the retry policy decides what happens next."""
    retryable = True

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class DeadlineExceeded(TransientError):
    pass


class TerminalFailure(LaneqError):
    """Retries exhausted."""
    retryable = False

    def __init__(self, job_id: str, retries: int, last_error: str):
        super().__init__(f"job {job_id} failed permanently after {retries} retries: {last_error}")
        self.job_id = job_id
        self.retries = retries
        self.last_error = last_error


class BrokerUnavailable(LaneqError):
    """Durable storage behind the broker could not be reached."""

    def __init__(self, op: str, cause: Optional[BaseException] = None):
        msg = f"broker unavailable during {op}"
        if cause is not None:
            msg = f"{msg}: {cause}"
        super().__init__(msg)
        self.op = op
        self.cause = cause


class JobNotFound(LaneqError):
    def __init__(self, job_id: str):
        super().__init__(f"job {job_id} not found")
        self.job_id = job_id


class InvalidTransition(LaneqError):
    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(f"job {job_id}: illegal transition {current} -> {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


def is_retryable(exc: BaseException) -> bool:
    """ValidationError and friends are final; anything else a handler raises is worth another try."""
    return bool(getattr(exc, "retryable", True))


__all__ = [
    "LaneqError",
    "ValidationError",
    "TransientError",
    "DeadlineExceeded",
    "TerminalFailure",
    "BrokerUnavailable",
    "JobNotFound",
    "InvalidTransition",
    "is_retryable",
]
