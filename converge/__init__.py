"""Converge — reconcile remote compute instances to a declared spec.

Build a :class:`Reconciler` around an instance client and hand it specs::

    from converge import InstanceSpec, Reconciler
    from converge.aws import EC2InstanceClient

    reconciler = Reconciler(EC2InstanceClient({"region_name": "us-east-1"}))
    record = reconciler.create(spec)
    record = reconciler.update(record.instance_id, new_spec, applied=spec)
"""

from .base import (
    Deadline,
    InstanceClientBlueprint,
    InstanceRecord,
    InstanceSpec,
    InstanceState,
    InstanceStatus,
)
from .base.config import ReconcilerSettings
from .engine import Reconciler

__all__ = [
    "Deadline",
    "InstanceClientBlueprint",
    "InstanceRecord",
    "InstanceSpec",
    "InstanceState",
    "InstanceStatus",
    "ReconcilerSettings",
    "Reconciler",
]
