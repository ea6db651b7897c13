"""
Check-in Engine - Retry Policy

Bounded-attempt decisions for one registration request, kept free of I/O
so they can be tested on their own.

  ROLE_CAPACITY_EXCEEDED  -> RESELECT  (mark candidate exhausted, pick again, no sleep)
  TRANSIENT               -> BACKOFF   (fixed delay, re-resolve reference data)
  everything else         -> FAIL

Any class fails once the attempt counter reaches max_attempts.

Usage:
    policy = RetryPolicy(max_attempts=3, delay_seconds=1.0)
    action = next_action(ErrorClass.TRANSIENT, attempt=1, policy=policy)
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from checkin.errors import ErrorClass

logger = logging.getLogger("checkin.retry")


class RetryAction(str, enum.Enum):
    RESELECT = "reselect"
    BACKOFF = "backoff"
    FAIL = "fail"


@dataclass
class RetryPolicy:
    """How hard to try one request before recording it as failed."""
    max_attempts: int = 3
    delay_seconds: float = 1.0     # fixed backoff for transient failures

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")

    @classmethod
    def from_dict(cls, cfg: dict[str, Any] | None) -> RetryPolicy:
        cfg = cfg or {}
        return cls(
            max_attempts=int(cfg.get("max_attempts", DEFAULT_POLICY.max_attempts)),
            delay_seconds=float(cfg.get("delay_seconds", DEFAULT_POLICY.delay_seconds)),
        )


DEFAULT_POLICY = RetryPolicy()

_RETRYABLE: dict[ErrorClass, RetryAction] = {
    ErrorClass.ROLE_CAPACITY_EXCEEDED: RetryAction.RESELECT,
    ErrorClass.TRANSIENT: RetryAction.BACKOFF,
}


def next_action(error_class: ErrorClass, attempt: int, policy: RetryPolicy = DEFAULT_POLICY) -> RetryAction:
    """
    Decide what follows a failed attempt.

    Args:
        error_class: classification of the failure
        attempt:     1-based number of the attempt that just failed
        policy:      retry bounds
    """
    action = _RETRYABLE.get(error_class, RetryAction.FAIL)
    if action is not RetryAction.FAIL and attempt >= policy.max_attempts:
        logger.debug("Attempt budget spent (%d/%d) on %s", attempt, policy.max_attempts,
                     error_class.value)
        return RetryAction.FAIL
    return action


def backoff(policy: RetryPolicy, sleep_fn: Callable[[float], None] = time.sleep) -> float:
    """Sleep the fixed transient-failure delay. Returns the delay used."""
    delay = max(0.0, policy.delay_seconds)
    if delay:
        sleep_fn(delay)
    return delay
