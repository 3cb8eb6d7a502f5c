"""
Retry utilities with a bounded time budget.

:class:`RetryExecutor` repeatedly invokes a remote call until it succeeds,
fails with a non-transient error, or the policy's time budget runs out.
The wait between attempts is fixed by default; ``backoff_factor`` turns it
into exponential backoff without touching any call site.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from functools import wraps
from typing import Any, Callable, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from converge.base.deadline import Deadline
from converge.base.exceptions import (
    InstanceNotFoundError,
    ReconcileTimeoutError,
    ThrottlingError,
    TransientError,
)

logger = logging.getLogger("converge")

T = TypeVar("T")


class ErrorClass(str, Enum):
    NOT_FOUND = "NotFound"
    THROTTLING = "Throttling"
    INTERNAL_TRANSIENT = "InternalTransient"
    FATAL = "Fatal"


TRANSIENT_CLASSES = frozenset({ErrorClass.THROTTLING, ErrorClass.INTERNAL_TRANSIENT})


def classify_error(exc: BaseException) -> ErrorClass:
    """Default classification predicate for instance client errors."""
    if isinstance(exc, InstanceNotFoundError):
        return ErrorClass.NOT_FOUND
    if isinstance(exc, ThrottlingError):
        return ErrorClass.THROTTLING
    if isinstance(exc, TransientError):
        return ErrorClass.INTERNAL_TRANSIENT
    return ErrorClass.FATAL


class RetryPolicy(BaseModel):
    """How long and how often to retry one remote call.

    Attributes:
        timeout: Total budget in seconds, measured from the first attempt.
        interval: Seconds to wait after a transient failure.
        backoff_factor: Multiplier applied to the wait after each retry;
            ``1.0`` keeps the interval fixed.
        max_interval: Cap on the wait between attempts.
        classify: Maps an exception onto an :class:`ErrorClass`.
    """

    model_config = ConfigDict(frozen=True)

    timeout: float = Field(default=360.0, ge=0)
    interval: float = Field(default=10.0, ge=0)
    backoff_factor: float = Field(default=1.0, ge=1.0)
    max_interval: float = Field(default=60.0, ge=0)
    classify: Callable[[BaseException], ErrorClass] = classify_error


class RetryExecutor:
    """Run remote calls under a :class:`RetryPolicy`.

    Args:
        clock: Monotonic clock used to measure the budget.
        sleep: Optional sleep override; by default the caller's
            :class:`Deadline` sleeps so cancellation interrupts the wait.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._clock = clock
        self._sleep = sleep

    def run(
        self,
        operation: Callable[[], T],
        policy: RetryPolicy,
        deadline: Deadline | None = None,
        *,
        description: str | None = None,
    ) -> T:
        """Invoke *operation* until success, a fatal error or budget exhaustion.

        Raises:
            ReconcileTimeoutError: Every attempt within the budget failed
                transiently; chained to the last transient error.
            Exception: The first non-transient error, unwrapped.
        """
        deadline = deadline or Deadline.never()
        name = description or getattr(operation, "__qualname__", repr(operation))
        started = self._clock()
        delay = policy.interval
        attempt = 0
        while True:
            deadline.check(name)
            attempt += 1
            try:
                return operation()
            except Exception as exc:
                kind = policy.classify(exc)
                if kind not in TRANSIENT_CLASSES:
                    raise
                elapsed = self._clock() - started
                if elapsed + delay >= policy.timeout:
                    logger.error(
                        "Giving up on %s after %d attempts in %.1fs: %s",
                        name,
                        attempt,
                        elapsed,
                        exc,
                    )
                    raise ReconcileTimeoutError(
                        f"{name} did not succeed within {policy.timeout:.0f}s "
                        f"({attempt} attempts, last error: {exc})"
                    ) from exc
                logger.warning(
                    "Attempt %d for %s failed (%s: %s), retrying in %.1fs",
                    attempt,
                    name,
                    kind.value,
                    exc,
                    delay,
                )
                self._pause(delay, deadline, name)
                delay = min(delay * policy.backoff_factor, max(policy.max_interval, policy.interval))

    def _pause(self, seconds: float, deadline: Deadline, name: str) -> None:
        if self._sleep is None:
            deadline.sleep(seconds, name)
        else:
            self._sleep(seconds)
            deadline.check(name)


def retry(
    timeout: float = 360.0,
    interval: float = 10.0,
    backoff_factor: float = 1.0,
    max_interval: float = 60.0,
    classify: Callable[[BaseException], ErrorClass] = classify_error,
) -> Callable:
    """Decorator: run a function through :class:`RetryExecutor`.

    Args:
        timeout: Total retry budget in seconds.
        interval: Wait after a transient failure.
        backoff_factor: Growth of the wait per retry (``1.0`` = fixed).
        max_interval: Cap on the wait between retries.
        classify: Error classification predicate.

    Returns:
        Decorated function that retries transient failures.
    """
    policy = RetryPolicy(
        timeout=timeout,
        interval=interval,
        backoff_factor=backoff_factor,
        max_interval=max_interval,
        classify=classify,
    )

    def decorator(fn: Callable[..., T]) -> Callable[..., T]:
        @wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            return RetryExecutor().run(
                lambda: fn(*args, **kwargs),
                policy,
                description=fn.__qualname__,
            )

        return wrapper

    return decorator


__all__ = [
    "ErrorClass",
    "TRANSIENT_CLASSES",
    "classify_error",
    "RetryPolicy",
    "RetryExecutor",
    "retry",
]
