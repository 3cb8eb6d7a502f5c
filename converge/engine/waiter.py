"""Status polling between workflow phases."""

from __future__ import annotations

import time
from typing import Callable

from converge.base.client import InstanceClientBlueprint
from converge.base.deadline import Deadline
from converge.base.exceptions import (
    InstanceNotFoundError,
    InstanceVanishedError,
    ReconcileTimeoutError,
)
from converge.base.logger import cv_logger
from converge.base.models import InstanceState, InstanceStatus


class StateWaiter:
    """Poll ``describe_instance`` until the instance reaches a condition.

    Args:
        client: Instance client to poll.
        interval: Seconds between polls.
        clock: Monotonic clock used to measure the budget.
        sleep: Optional sleep override; by default the caller's
            :class:`Deadline` sleeps so cancellation interrupts the wait.
    """

    def __init__(
        self,
        client: InstanceClientBlueprint,
        *,
        interval: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.client = client
        self.interval = interval
        self._clock = clock
        self._sleep = sleep

    def wait_for(
        self,
        instance_id: str,
        target: InstanceStatus,
        timeout: float,
        deadline: Deadline | None = None,
    ) -> InstanceState:
        """Block until the instance reports *target* status.

        Returns:
            The first observed state with the target status.

        Raises:
            ReconcileTimeoutError: *timeout* seconds elapsed first.
            InstanceVanishedError: The instance disappeared while waiting.
        """
        return self.wait_until(
            instance_id,
            lambda state: state.status is target,
            f"status {target.value}",
            timeout,
            deadline,
        )

    def wait_until(
        self,
        instance_id: str,
        predicate: Callable[[InstanceState], bool],
        description: str,
        timeout: float,
        deadline: Deadline | None = None,
    ) -> InstanceState:
        """Block until *predicate* holds for the observed state.

        Describe failures other than NotFound propagate unchanged.
        """
        deadline = deadline or Deadline.never()
        operation = f"waiting for {instance_id} to reach {description}"
        started = self._clock()
        polls = 0
        while True:
            deadline.check(operation)
            polls += 1
            try:
                state = self.client.describe_instance(instance_id)
            except InstanceNotFoundError as e:
                raise InstanceVanishedError(
                    f"Instance disappeared while {operation}", instance_id=instance_id
                ) from e
            if predicate(state):
                return state
            elapsed = self._clock() - started
            if elapsed >= timeout:
                raise ReconcileTimeoutError(
                    f"Timed out after {elapsed:.0f}s {operation} "
                    f"(last status {state.status.value})",
                    instance_id=instance_id,
                )
            cv_logger.debug(
                f"Instance is {state.status.value}, still {operation}",
                instance_id=instance_id,
                attempt=polls,
            )
            self._pause(min(self.interval, timeout - elapsed), deadline, operation)

    def _pause(self, seconds: float, deadline: Deadline, operation: str) -> None:
        if self._sleep is None:
            deadline.sleep(seconds, operation)
        else:
            self._sleep(seconds)
            deadline.check(operation)
