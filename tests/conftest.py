"""Shared fixtures: an in-memory instance client and a virtual clock."""

from __future__ import annotations

import itertools
from typing import Any

import pytest

from converge.base.client import InstanceClientBlueprint
from converge.base.config import ReconcilerSettings
from converge.base.exceptions import ComputeError, InstanceNotFoundError
from converge.base.models import (
    DiskState,
    InstanceChargeType,
    InstanceSpec,
    InstanceState,
    InstanceStatus,
)
from converge.base.retry import RetryExecutor
from converge.engine.reconciler import Reconciler
from converge.engine.waiter import StateWaiter

MUTATIONS = frozenset({
    "create_instance",
    "start_instance",
    "stop_instance",
    "delete_instance",
    "modify_attributes",
    "replace_system_disk",
    "modify_vpc_attribute",
    "modify_instance_type",
    "modify_network_spec",
    "modify_charge_type",
    "allocate_public_ip",
    "join_security_groups",
    "leave_security_groups",
    "set_tags",
    "remove_tags",
    "attach_role",
})

# status an instance drifts into on its next describe
_SETTLES_TO = {
    InstanceStatus.PENDING: InstanceStatus.STOPPED,
    InstanceStatus.STOPPING: InstanceStatus.STOPPED,
    InstanceStatus.STARTING: InstanceStatus.RUNNING,
}


class FakeClock:
    """Virtual monotonic clock; sleeping advances it instantly."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeInstanceClient(InstanceClientBlueprint):
    """In-memory platform that records every call.

    Transitional statuses (Pending, Stopping, Starting) settle after
    ``settle_after`` describes. ``fail(op, *errors)`` queues errors that the
    next calls of *op* raise in order.
    """

    def __init__(self, settle_after: int = 1) -> None:
        self.settle_after = settle_after
        self.instances: dict[str, dict[str, Any]] = {}
        self.roles: dict[str, str] = {}
        self.calls: list[tuple[Any, ...]] = []
        self._failures: dict[str, list[BaseException]] = {}
        self._polls: dict[str, int] = {}
        self._ids = itertools.count(1)
        self._ips = itertools.count(10)

    # ── test helpers ──────────────────────────────────────────────────

    def fail(self, op: str, *errors: BaseException) -> None:
        self._failures.setdefault(op, []).extend(errors)

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]

    def mutations(self) -> list[str]:
        return [name for name in self.names() if name in MUTATIONS]

    def count(self, op: str) -> int:
        return self.names().count(op)

    def seed(self, **fields: Any) -> str:
        """Insert a Running instance directly and return its ID."""
        iid = f"i-{next(self._ids):04d}"
        record: dict[str, Any] = {
            "instance_id": iid,
            "status": InstanceStatus.RUNNING,
            "image_id": "img-1",
            "instance_type": "small",
            "system_disk": DiskState(category="cloud_efficiency", size=40),
            "security_groups": frozenset({"sg-1"}),
            "instance_name": "web",
            "tags": {},
        }
        record.update(fields)
        self.instances[iid] = record
        return iid

    def _record(self, op: str, *args: Any) -> None:
        self.calls.append((op, *args))
        queued = self._failures.get(op)
        if queued:
            raise queued.pop(0)

    def _get(self, instance_id: str) -> dict[str, Any]:
        if instance_id not in self.instances:
            raise InstanceNotFoundError(f"{instance_id} not found", instance_id=instance_id)
        return self.instances[instance_id]

    def _transition(self, instance_id: str, status: InstanceStatus) -> None:
        self.instances[instance_id]["status"] = status
        self._polls[instance_id] = 0

    # ── blueprint ─────────────────────────────────────────────────────

    def create_instance(self, spec: InstanceSpec) -> str:
        self._record("create_instance", spec)
        iid = f"i-{next(self._ids):04d}"
        net = spec.network
        self.instances[iid] = {
            "instance_id": iid,
            "status": InstanceStatus.PENDING,
            "zone": spec.zone,
            "image_id": spec.image_id,
            "instance_type": spec.instance_type,
            "system_disk": DiskState(
                category=spec.system_disk.category, size=spec.system_disk.size or 40
            ),
            "vswitch_id": net.vswitch_id,
            "private_ip": net.private_ip or ("172.16.0.5" if net.vswitch_id else "10.0.0.5"),
            "internet_charge_type": net.internet_charge_type,
            "internet_max_bandwidth_in": net.internet_max_bandwidth_in,
            "internet_max_bandwidth_out": net.internet_max_bandwidth_out,
            "instance_charge_type": spec.billing.instance_charge_type,
            "security_groups": frozenset(sorted(spec.security_groups)[:1]),
            "instance_name": spec.instance_name,
            "description": spec.description,
            "host_name": spec.host_name,
            "key_name": spec.key_name,
            "tags": {},
        }
        self._polls[iid] = 0
        if spec.role_name:
            self.roles[iid] = spec.role_name
        return iid

    def describe_instance(self, instance_id: str) -> InstanceState:
        self._record("describe_instance", instance_id)
        inst = self._get(instance_id)
        status = inst["status"]
        if status in _SETTLES_TO:
            self._polls[instance_id] = self._polls.get(instance_id, 0) + 1
            if self._polls[instance_id] > self.settle_after:
                self._transition(instance_id, _SETTLES_TO[status])
        fields = {key: val for key, val in inst.items() if key != "tags"}
        return InstanceState(**fields)

    def start_instance(self, instance_id: str) -> None:
        self._record("start_instance", instance_id)
        inst = self._get(instance_id)
        if inst["status"] is not InstanceStatus.STOPPED:
            raise ComputeError("IncorrectInstanceStatus", instance_id=instance_id)
        self._transition(instance_id, InstanceStatus.STARTING)

    def stop_instance(self, instance_id: str, force: bool = False) -> None:
        self._record("stop_instance", instance_id, force)
        inst = self._get(instance_id)
        if inst["status"] is not InstanceStatus.RUNNING:
            raise ComputeError("IncorrectInstanceStatus", instance_id=instance_id)
        self._transition(instance_id, InstanceStatus.STOPPING)

    def delete_instance(self, instance_id: str) -> None:
        self._record("delete_instance", instance_id)
        inst = self._get(instance_id)
        if inst["status"] is not InstanceStatus.STOPPED:
            raise ComputeError("IncorrectInstanceStatus", instance_id=instance_id)
        del self.instances[instance_id]

    def _require_stopped(self, instance_id: str) -> dict[str, Any]:
        inst = self._get(instance_id)
        if inst["status"] is not InstanceStatus.STOPPED:
            raise ComputeError("IncorrectInstanceStatus", instance_id=instance_id)
        return inst

    def modify_attributes(self, instance_id, *, name=None, description=None, host_name=None, password=None):
        self._record(
            "modify_attributes",
            instance_id,
            {"name": name, "description": description, "host_name": host_name, "password": password},
        )
        inst = self._get(instance_id)
        for key, val in (("instance_name", name), ("description", description), ("host_name", host_name)):
            if val is not None:
                inst[key] = val

    def replace_system_disk(self, instance_id, image_id, disk_size=None):
        self._record("replace_system_disk", instance_id, image_id, disk_size)
        inst = self._require_stopped(instance_id)
        inst["image_id"] = image_id
        if disk_size is not None:
            inst["system_disk"] = DiskState(category=inst["system_disk"].category, size=disk_size)

    def modify_vpc_attribute(self, instance_id, vswitch_id, private_ip=None):
        self._record("modify_vpc_attribute", instance_id, vswitch_id, private_ip)
        inst = self._require_stopped(instance_id)
        inst["vswitch_id"] = vswitch_id
        if private_ip:
            inst["private_ip"] = private_ip

    def modify_instance_type(self, instance_id, instance_type):
        self._record("modify_instance_type", instance_id, instance_type)
        self._require_stopped(instance_id)["instance_type"] = instance_type

    def modify_network_spec(self, instance_id, *, internet_charge_type=None, bandwidth_in=None, bandwidth_out=None):
        self._record(
            "modify_network_spec",
            instance_id,
            {"internet_charge_type": internet_charge_type, "bandwidth_in": bandwidth_in, "bandwidth_out": bandwidth_out},
        )
        inst = self._get(instance_id)
        if internet_charge_type is not None:
            inst["internet_charge_type"] = internet_charge_type
        if bandwidth_in is not None:
            inst["internet_max_bandwidth_in"] = bandwidth_in
        if bandwidth_out is not None:
            inst["internet_max_bandwidth_out"] = bandwidth_out

    def modify_charge_type(self, instance_id, *, period, period_unit, include_data_disks=True, auto_pay=True, dry_run=False):
        self._record(
            "modify_charge_type",
            instance_id,
            {
                "period": period,
                "period_unit": period_unit,
                "include_data_disks": include_data_disks,
                "auto_pay": auto_pay,
                "dry_run": dry_run,
            },
        )
        self._get(instance_id)["instance_charge_type"] = InstanceChargeType.PREPAID

    def allocate_public_ip(self, instance_id):
        self._record("allocate_public_ip", instance_id)
        ip = f"47.0.0.{next(self._ips)}"
        self._get(instance_id)["public_ip"] = ip
        return ip

    def join_security_groups(self, instance_id, group_ids):
        self._record("join_security_groups", instance_id, list(group_ids))
        inst = self._get(instance_id)
        inst["security_groups"] = inst["security_groups"] | frozenset(group_ids)

    def leave_security_groups(self, instance_id, group_ids):
        self._record("leave_security_groups", instance_id, list(group_ids))
        inst = self._get(instance_id)
        inst["security_groups"] = inst["security_groups"] - frozenset(group_ids)

    def set_tags(self, instance_id, tags):
        self._record("set_tags", instance_id, dict(tags))
        self._get(instance_id)["tags"].update(tags)

    def remove_tags(self, instance_id, keys):
        self._record("remove_tags", instance_id, list(keys))
        inst = self._get(instance_id)
        for key in keys:
            inst["tags"].pop(key, None)

    def get_tags(self, instance_id):
        self._record("get_tags", instance_id)
        return dict(self._get(instance_id)["tags"])

    def describe_role_attachment(self, instance_id):
        self._record("describe_role_attachment", instance_id)
        self._get(instance_id)
        return self.roles.get(instance_id, "")

    def attach_role(self, instance_id, role_name):
        self._record("attach_role", instance_id, role_name)
        self._get(instance_id)
        self.roles[instance_id] = role_name


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def client() -> FakeInstanceClient:
    return FakeInstanceClient()


@pytest.fixture
def settings() -> ReconcilerSettings:
    return ReconcilerSettings(
        stop_timeout=120,
        start_timeout=500,
        poll_interval=5,
        retry_interval=10,
        modify_timeout=360,
        delete_timeout=300,
        image_timeout=120,
    )


def build_reconciler(client, settings, clock, sleep=None) -> Reconciler:
    """Reconciler whose retries and waits run on the virtual *clock*."""
    sleep = sleep or clock.sleep
    return Reconciler(
        client,
        settings,
        executor=RetryExecutor(clock=clock, sleep=sleep),
        waiter=StateWaiter(client, interval=settings.poll_interval, clock=clock, sleep=sleep),
    )


@pytest.fixture
def reconciler(client, settings, clock) -> Reconciler:
    return build_reconciler(client, settings, clock)


def make_spec(**overrides: Any) -> InstanceSpec:
    """Small PostPaid instance spec with optional overrides."""
    fields: dict[str, Any] = {
        "image_id": "img-1",
        "instance_type": "small",
        "security_groups": {"sg-1"},
        "instance_name": "web",
    }
    fields.update(overrides)
    return InstanceSpec(**fields)
