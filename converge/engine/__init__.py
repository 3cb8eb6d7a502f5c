"""Reconciliation engine: change sets, business rules, waits and workflows."""

from .changeset import REBOOT_KINDS, Change, ChangeSet, ChangeSetComputer
from .guard import RULES, LifecycleGuard
from .reconciler import Reconciler
from .waiter import StateWaiter

__all__ = [
    "REBOOT_KINDS",
    "Change",
    "ChangeSet",
    "ChangeSetComputer",
    "RULES",
    "LifecycleGuard",
    "Reconciler",
    "StateWaiter",
]
