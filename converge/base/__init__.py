"""Client blueprint, data models and core utilities.

Implement :class:`InstanceClientBlueprint` to reconcile instances on a new
platform; import the models and exceptions to type-hint your own code.
"""

from .client import InstanceClientBlueprint
from .deadline import Deadline
from .models import (
    Billing,
    ChangeKind,
    DiskState,
    InstanceChargeType,
    InstanceRecord,
    InstanceSpec,
    InstanceState,
    InstanceStatus,
    InternetChargeType,
    NetworkSpec,
    PeriodUnit,
    SpotSpec,
    SpotStrategy,
    SystemDisk,
)
from .retry import ErrorClass, RetryExecutor, RetryPolicy, classify_error, retry


__all__ = [
    "InstanceClientBlueprint",
    "Deadline",
    "Billing",
    "ChangeKind",
    "DiskState",
    "InstanceChargeType",
    "InstanceRecord",
    "InstanceSpec",
    "InstanceState",
    "InstanceStatus",
    "InternetChargeType",
    "NetworkSpec",
    "PeriodUnit",
    "SpotSpec",
    "SpotStrategy",
    "SystemDisk",
    "ErrorClass",
    "RetryExecutor",
    "RetryPolicy",
    "classify_error",
    "retry",
]
