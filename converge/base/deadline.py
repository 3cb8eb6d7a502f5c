"""
Caller-supplied deadlines and cancellation.

Every suspension point in a reconciliation (state polls and retry sleeps)
goes through :meth:`Deadline.sleep`, so a caller can bound a whole pass with
one timeout or stop it from another thread with :meth:`Deadline.cancel`.
"""

from __future__ import annotations

import threading
import time
from typing import Callable

from converge.base.exceptions import DeadlineExceededError, OperationCancelledError


class Deadline:
    """Overall time limit plus cancellation flag for one reconciliation.

    Args:
        timeout: Seconds from now until the deadline expires; ``None`` means
            no time limit (cancellation still works).
        clock: Monotonic clock; overridable for tests.
    """

    def __init__(
        self,
        timeout: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._expires_at = None if timeout is None else clock() + timeout
        self._cancelled = threading.Event()

    @classmethod
    def never(cls) -> Deadline:
        return cls(None)

    def cancel(self) -> None:
        """Request cancellation; sleeping workflows wake up immediately."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> float | None:
        """Seconds left before expiry, or ``None`` when unbounded."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, operation: str = "reconciliation") -> None:
        """Raise if the deadline has been cancelled or has expired.

        Raises:
            OperationCancelledError: After :meth:`cancel`.
            DeadlineExceededError: After the timeout elapsed.
        """
        if self.cancelled:
            raise OperationCancelledError(f"{operation} cancelled by caller")
        if self.expired():
            raise DeadlineExceededError(f"{operation} exceeded the caller deadline")

    def sleep(self, seconds: float, operation: str = "reconciliation") -> None:
        """Sleep up to *seconds*, waking early on cancellation or expiry."""
        self.check(operation)
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        if seconds > 0:
            self._cancelled.wait(seconds)
        self.check(operation)
