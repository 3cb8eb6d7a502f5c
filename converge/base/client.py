"""Instance client blueprint."""

from __future__ import annotations

from abc import ABC, abstractmethod

from converge.base.models import (
    InstanceSpec,
    InstanceState,
    InternetChargeType,
    PeriodUnit,
)


class InstanceClientBlueprint(ABC):
    """Abstract interface to the control-plane API of one compute platform.

    The reconciler talks to the platform only through these calls and is
    handed an implementation explicitly; it never looks one up.

    Implementations raise the :mod:`converge.base.exceptions` hierarchy:
    :class:`~converge.base.exceptions.InstanceNotFoundError` for a missing
    instance, :class:`~converge.base.exceptions.ThrottlingError` for rate
    limiting, :class:`~converge.base.exceptions.InternalTransientError` for
    short-lived platform faults and
    :class:`~converge.base.exceptions.ComputeError` for everything else.
    """

    # ── lifecycle ─────────────────────────────────────────────────────

    @abstractmethod
    def create_instance(self, spec: InstanceSpec) -> str:
        """Create an instance from *spec* and return its ID.

        The new instance starts out ``Pending``. Only the first security
        group (in sorted order) needs to be attached at creation time.
        """

    @abstractmethod
    def describe_instance(self, instance_id: str) -> InstanceState:
        """Return the current state of an instance.

        ``role_name`` and ``tags`` may be left empty; the reconciler reads
        them through :meth:`describe_role_attachment` and :meth:`get_tags`.

        Raises:
            InstanceNotFoundError: If the instance does not exist.
        """

    @abstractmethod
    def start_instance(self, instance_id: str) -> None:
        """Start a stopped instance."""

    @abstractmethod
    def stop_instance(self, instance_id: str, force: bool = False) -> None:
        """Stop a running instance; *force* skips the graceful shutdown."""

    @abstractmethod
    def delete_instance(self, instance_id: str) -> None:
        """Delete a stopped instance permanently."""

    # ── attributes ────────────────────────────────────────────────────

    @abstractmethod
    def modify_attributes(
        self,
        instance_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        host_name: str | None = None,
        password: str | None = None,
    ) -> None:
        """Update plain attributes; ``None`` leaves a field untouched.

        A new password only takes effect after a stop/start cycle.
        """

    @abstractmethod
    def replace_system_disk(
        self, instance_id: str, image_id: str, disk_size: int | None = None
    ) -> None:
        """Re-image the system disk; the instance must be stopped."""

    @abstractmethod
    def modify_vpc_attribute(
        self, instance_id: str, vswitch_id: str, private_ip: str | None = None
    ) -> None:
        """Move the instance to another vswitch; the instance must be stopped."""

    @abstractmethod
    def modify_instance_type(self, instance_id: str, instance_type: str) -> None:
        """Change the instance type; the instance must be stopped.

        Frequently throttled: an instance modified once cannot be modified
        again for several minutes.
        """

    @abstractmethod
    def modify_network_spec(
        self,
        instance_id: str,
        *,
        internet_charge_type: InternetChargeType | None = None,
        bandwidth_in: int | None = None,
        bandwidth_out: int | None = None,
    ) -> None:
        """Change public network billing / bandwidth; ``None`` leaves a value as is."""

    @abstractmethod
    def modify_charge_type(
        self,
        instance_id: str,
        *,
        period: int,
        period_unit: PeriodUnit,
        include_data_disks: bool = True,
        auto_pay: bool = True,
        dry_run: bool = False,
    ) -> None:
        """Convert a PostPaid instance to PrePaid for *period* *period_unit*."""

    @abstractmethod
    def allocate_public_ip(self, instance_id: str) -> str | None:
        """Assign a public IP address and return it when known."""

    # ── security groups ───────────────────────────────────────────────

    @abstractmethod
    def join_security_groups(self, instance_id: str, group_ids: list[str]) -> None:
        """Add the instance to each security group in *group_ids*."""

    @abstractmethod
    def leave_security_groups(self, instance_id: str, group_ids: list[str]) -> None:
        """Remove the instance from each security group in *group_ids*."""

    # ── tags / role ───────────────────────────────────────────────────

    @abstractmethod
    def set_tags(self, instance_id: str, tags: dict[str, str]) -> None:
        """Add or overwrite the given tags."""

    @abstractmethod
    def remove_tags(self, instance_id: str, keys: list[str]) -> None:
        """Remove the tags with the given keys."""

    @abstractmethod
    def get_tags(self, instance_id: str) -> dict[str, str]:
        """Return the instance's user tags."""

    @abstractmethod
    def describe_role_attachment(self, instance_id: str) -> str:
        """Return the attached role name, or ``""`` when none is attached.

        Raises:
            RoleAttachmentResponseError: The platform returned a payload that
                could not be parsed; retrying usually succeeds.
        """

    @abstractmethod
    def attach_role(self, instance_id: str, role_name: str) -> None:
        """Attach *role_name* to a VPC instance."""
