"""
Converge exception hierarchy.

Every failure raised by the reconciliation core or by an instance client
inherits from :class:`ConvergeError`. Client failures live under
:class:`ComputeError`; the classification predicate in
:mod:`converge.base.retry` sorts them into NotFound, Throttling,
InternalTransient and Fatal.
"""

from __future__ import annotations


# ── Base ──────────────────────────────────────────────────────────────
class ConvergeError(Exception):
    """Root exception for all Converge errors.

    Attributes:
        instance_id: Instance the failing workflow was converging, if known.
        phase: Workflow phase that raised (e.g. ``wait-stopped``).
        change_kind: Change kind being applied when the error was raised.
    """

    def __init__(self, message: str = "", *, instance_id: str | None = None) -> None:
        super().__init__(message)
        self.instance_id = instance_id
        self.phase: str | None = None
        self.change_kind: str | None = None

    def __str__(self) -> str:
        message = super().__str__()
        context = [
            f"{key}={val}"
            for key, val in (
                ("instance", self.instance_id),
                ("phase", self.phase),
                ("change", self.change_kind),
            )
            if val
        ]
        if context:
            return f"{message} [{', '.join(context)}]"
        return message


# ── Compute client ────────────────────────────────────────────────────
class ComputeError(ConvergeError):
    """Base exception for instance client operations."""


class InstanceNotFoundError(ComputeError):
    """Instance does not exist (or no longer exists)."""


class InstanceVanishedError(ComputeError):
    """Instance disappeared while a workflow was waiting on it."""


class UnsupportedOperationError(ComputeError):
    """The backing platform has no equivalent for the requested mutation."""


class TransientError(ComputeError):
    """Base exception for failures worth retrying."""


class ThrottlingError(TransientError):
    """Request rejected by the platform's rate limiter."""


class InternalTransientError(TransientError):
    """Platform reported a short-lived internal failure."""


class RoleAttachmentResponseError(ComputeError):
    """Role attachment lookup returned a malformed payload.

    Fatal by default; only the role lookup itself treats it as transient.
    """


# ── Timeouts / cancellation ───────────────────────────────────────────
class ReconcileTimeoutError(ConvergeError):
    """A wait or retry budget elapsed without reaching its target."""


class DeadlineExceededError(ReconcileTimeoutError):
    """The caller-supplied overall deadline expired."""


class OperationCancelledError(ConvergeError):
    """The caller cancelled the reconciliation."""


# ── Business rules ────────────────────────────────────────────────────
class BusinessRuleViolation(ConvergeError):
    """A lifecycle rule rejected the requested transition.

    Attributes:
        rule: Name of the violated rule (e.g. ``delete-while-prepaid``).
    """

    def __init__(self, rule: str, message: str, *, instance_id: str | None = None) -> None:
        super().__init__(f"{rule}: {message}", instance_id=instance_id)
        self.rule = rule


class SpecValidationError(ConvergeError):
    """The desired spec is internally inconsistent.

    Raised before any remote mutation, so nothing is left half-applied.
    """

    def __init__(self, rule: str, message: str, *, instance_id: str | None = None) -> None:
        super().__init__(f"{rule}: {message}", instance_id=instance_id)
        self.rule = rule


__all__ = [
    "ConvergeError",
    "ComputeError",
    "InstanceNotFoundError",
    "InstanceVanishedError",
    "UnsupportedOperationError",
    "TransientError",
    "ThrottlingError",
    "InternalTransientError",
    "RoleAttachmentResponseError",
    "ReconcileTimeoutError",
    "DeadlineExceededError",
    "OperationCancelledError",
    "BusinessRuleViolation",
    "SpecValidationError",
]
