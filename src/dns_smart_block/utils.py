"""
Utilities
=========

Small helpers shared by the fetcher, the LLM client and the orchestrator:

- `RetryPolicy` and the `retry` decorator, which retries transient errors
  with capped exponential backoff and jitter.
- `utcnow`, the timezone-aware clock used for every stored timestamp.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import wraps
from typing import Callable, Type, TypeVar

import structlog

log = structlog.get_logger(__name__)
T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to attempt a call and how long to wait in between."""

    max_attempts: int
    base_delay_seconds: float = 1.0
    max_backoff_seconds: float = 30.0

    def delay(self, attempt: int) -> float:
        """Backoff (without jitter) after the given 1-based attempt."""
        return min(
            self.base_delay_seconds * (2 ** (attempt - 1)), self.max_backoff_seconds
        )


def retry(
    retryable_exceptions: tuple[Type[Exception], ...],
    policy_attr: str = "retry_policy",
    non_retryable_exceptions: tuple[Type[Exception], ...] = (),
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    A decorator that retries a method call on specific exceptions.

    The policy is read from ``self.<policy_attr>`` at call time, so each
    instance can carry its own limits.

    Args:
        retryable_exceptions: A tuple of exception types that should trigger a retry.
        policy_attr: Name of the instance attribute holding a `RetryPolicy`.
        non_retryable_exceptions: Subclasses of the retryable types that must
            be raised immediately.
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(self, *args, **kwargs) -> T:
            policy: RetryPolicy = getattr(self, policy_attr)
            if policy.max_attempts < 1:
                raise ValueError("max_attempts must be >= 1")
            for attempt in range(1, policy.max_attempts + 1):
                try:
                    return func(self, *args, **kwargs)
                except retryable_exceptions as e:
                    if isinstance(e, non_retryable_exceptions):
                        raise
                    if attempt == policy.max_attempts:
                        log.warning(
                            "Call failed after all attempts",
                            func=func.__name__,
                            attempts=attempt,
                            error=str(e),
                        )
                        raise
                    log.warning(
                        "Call failed; retrying",
                        func=func.__name__,
                        error=str(e),
                        attempt=attempt,
                        max_attempts=policy.max_attempts,
                    )
                    _sleep_backoff(attempt, policy)
            # This part should be unreachable if max_attempts > 0
            raise RuntimeError("Retry loop exited unexpectedly.")

        return wrapper

    return decorator


def _sleep_backoff(attempt: int, policy: RetryPolicy) -> None:
    """Sleep for a short duration with exponential backoff and jitter."""
    delay = min(policy.delay(attempt) * random.uniform(0.8, 1.2), policy.max_backoff_seconds)
    log.info(
        "Sleeping before retry",
        delay=round(delay, 2),
        attempt=attempt,
        max_attempts=policy.max_attempts,
    )
    time.sleep(delay)
