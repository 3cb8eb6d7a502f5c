"""
Desired-vs-observed diffing.

:class:`ChangeSetComputer` compares an :class:`InstanceSpec` against the
freshly observed :class:`InstanceState` and returns a :class:`ChangeSet`:
one :class:`Change` per change kind that needs applying. Computing a change
set never touches the remote platform.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator

from converge.base.models import ChangeKind, InstanceSpec, InstanceState

# Applied in this order inside a single stop/start cycle.
REBOOT_KINDS: tuple[ChangeKind, ...] = (
    ChangeKind.IMAGE,
    ChangeKind.VPC_ATTRIBUTE,
    ChangeKind.PASSWORD,
    ChangeKind.INSTANCE_TYPE,
)


@dataclass(frozen=True)
class Change:
    """Before/after values for one change kind."""

    kind: ChangeKind
    before: Any
    after: Any

    @property
    def requires_reboot(self) -> bool:
        return self.kind in REBOOT_KINDS


@dataclass(frozen=True)
class ChangeSet:
    """Pending changes for one update pass.

    Attributes:
        changes: Change kind to its :class:`Change`.
        disk_resize: ``(before, after)`` system disk sizes when the desired
            size differs from the observed one.
    """

    changes: dict[ChangeKind, Change] = field(default_factory=dict)
    disk_resize: tuple[int | None, int] | None = None

    def __contains__(self, kind: object) -> bool:
        return kind in self.changes

    def __iter__(self) -> Iterator[Change]:
        return iter(self.changes.values())

    def __len__(self) -> int:
        return len(self.changes)

    def get(self, kind: ChangeKind) -> Change | None:
        return self.changes.get(kind)

    @property
    def kinds(self) -> list[ChangeKind]:
        return list(self.changes)

    @property
    def reboot_changes(self) -> list[Change]:
        return [self.changes[kind] for kind in REBOOT_KINDS if kind in self.changes]

    @property
    def requires_reboot(self) -> bool:
        return any(kind in self.changes for kind in REBOOT_KINDS)

    @property
    def allocates_public_ip(self) -> bool:
        """True when outbound bandwidth goes from none to some."""
        change = self.changes.get(ChangeKind.NETWORK_SPEC)
        if change is None or "bandwidth_out" not in change.after:
            return False
        return change.before["bandwidth_out"] <= 0 < change.after["bandwidth_out"]


def tag_diff(
    before: dict[str, str], after: dict[str, str]
) -> tuple[dict[str, str], list[str]]:
    """Split a tag change into tags to set and keys to remove."""
    to_set = {key: val for key, val in after.items() if before.get(key) != val}
    to_remove = sorted(key for key in before if key not in after)
    return to_set, to_remove


def group_diff(before: frozenset[str], after: frozenset[str]) -> tuple[list[str], list[str]]:
    """Split a security group change into groups to join and groups to leave."""
    return sorted(after - before), sorted(before - after)


class ChangeSetComputer:
    """Diff a desired spec against observed state.

    Fields the platform never reports back (the password) are compared with
    the previously applied spec instead; without one they are assumed
    unchanged.
    """

    def compute(
        self,
        desired: InstanceSpec,
        observed: InstanceState,
        applied: InstanceSpec | None = None,
    ) -> ChangeSet:
        changes: dict[ChangeKind, Change] = {}

        def add(kind: ChangeKind, before: Any, after: Any) -> None:
            changes[kind] = Change(kind, before, after)

        if desired.tags != observed.tags:
            add(ChangeKind.TAGS, dict(observed.tags), dict(desired.tags))

        if desired.security_groups != observed.security_groups:
            add(ChangeKind.SECURITY_GROUPS, observed.security_groups, desired.security_groups)

        attributes = self._attribute_changes(desired, observed)
        if attributes:
            add(
                ChangeKind.ATTRIBUTES,
                {name: getattr(observed, name) for name in attributes},
                attributes,
            )

        if desired.image_id != observed.image_id:
            add(
                ChangeKind.IMAGE,
                (observed.image_id, observed.system_disk.size),
                (desired.image_id, desired.system_disk.size),
            )

        vpc = self._vpc_change(desired, observed)
        if vpc is not None:
            add(ChangeKind.VPC_ATTRIBUTE, *vpc)

        if applied is not None and desired.password != applied.password:
            # write-only: never logged or echoed in the change itself
            add(ChangeKind.PASSWORD, "<hidden>", "<hidden>")

        if desired.instance_type != observed.instance_type:
            add(ChangeKind.INSTANCE_TYPE, observed.instance_type, desired.instance_type)

        network = self._network_change(desired, observed)
        if network is not None:
            add(ChangeKind.NETWORK_SPEC, *network)

        if desired.billing.instance_charge_type != observed.instance_charge_type:
            add(
                ChangeKind.CHARGE_TYPE,
                observed.instance_charge_type,
                desired.billing.instance_charge_type,
            )

        if desired.role_name and desired.role_name != observed.role_name:
            add(ChangeKind.ROLE, observed.role_name, desired.role_name)

        disk_resize = None
        size = desired.system_disk.size
        if size is not None and size != observed.system_disk.size:
            disk_resize = (observed.system_disk.size, size)

        return ChangeSet(changes=changes, disk_resize=disk_resize)

    @staticmethod
    def _attribute_changes(desired: InstanceSpec, observed: InstanceState) -> dict[str, str]:
        wanted = {
            "instance_name": desired.instance_name,
            "description": desired.description,
        }
        # host name is platform-assigned unless set explicitly
        if desired.host_name:
            wanted["host_name"] = desired.host_name
        return {name: val for name, val in wanted.items() if getattr(observed, name) != val}

    @staticmethod
    def _vpc_change(
        desired: InstanceSpec, observed: InstanceState
    ) -> tuple[dict[str, str], dict[str, str]] | None:
        net = desired.network
        after: dict[str, str] = {}
        if net.vswitch_id != observed.vswitch_id:
            after["vswitch_id"] = net.vswitch_id
        # the private IP is platform-assigned unless set explicitly
        if net.vswitch_id and net.private_ip and net.private_ip != observed.private_ip:
            after["private_ip"] = net.private_ip
        if not after:
            return None
        after.setdefault("vswitch_id", net.vswitch_id)
        before = {"vswitch_id": observed.vswitch_id, "private_ip": observed.private_ip}
        return before, after

    @staticmethod
    def _network_change(
        desired: InstanceSpec, observed: InstanceState
    ) -> tuple[dict[str, Any], dict[str, Any]] | None:
        net = desired.network
        after: dict[str, Any] = {}
        if net.internet_max_bandwidth_out != observed.internet_max_bandwidth_out:
            after["bandwidth_out"] = net.internet_max_bandwidth_out
        # charge type and inbound bandwidth only mean something with public traffic
        if net.internet_max_bandwidth_out > 0:
            if net.internet_charge_type != observed.internet_charge_type:
                after["internet_charge_type"] = net.internet_charge_type
            if (
                net.internet_max_bandwidth_in is not None
                and net.internet_max_bandwidth_in != observed.internet_max_bandwidth_in
            ):
                after["bandwidth_in"] = net.internet_max_bandwidth_in
        if not after:
            return None
        before = {
            "internet_charge_type": observed.internet_charge_type,
            "bandwidth_in": observed.internet_max_bandwidth_in,
            "bandwidth_out": observed.internet_max_bandwidth_out,
        }
        return before, after


__all__ = [
    "REBOOT_KINDS",
    "Change",
    "ChangeSet",
    "ChangeSetComputer",
    "tag_diff",
    "group_diff",
]
