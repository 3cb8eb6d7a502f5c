"""
Lifecycle business rules.

Every rule is checked before the workflow it protects issues its first
mutation, so a rejected request never leaves an instance half-changed.
"""

from __future__ import annotations

from converge.base.exceptions import BusinessRuleViolation, SpecValidationError
from converge.base.models import (
    ChangeKind,
    InstanceChargeType,
    InstanceSpec,
    InstanceState,
)
from converge.engine.changeset import ChangeSet

DELETE_WHILE_PREPAID = "delete-while-prepaid"
CHARGE_TYPE_REGRESSION = "charge-type-regression"
TYPE_CHANGE_WHILE_PREPAID = "type-change-while-prepaid"
DISK_SIZE_ONLY_CHANGE = "disk-size-only-change"
ROLE_REQUIRES_VPC = "role-requires-vpc"
VPC_ATTRIBUTE_WITHOUT_TARGET = "vpc-attribute-without-target"

RULES: dict[str, str] = {
    DELETE_WHILE_PREPAID: "PrePaid instances expire and are released automatically; "
    "they cannot be deleted",
    CHARGE_TYPE_REGRESSION: "an instance cannot be converted from PrePaid back to PostPaid",
    TYPE_CHANGE_WHILE_PREPAID: "the instance type of a PrePaid instance cannot be modified",
    DISK_SIZE_ONLY_CHANGE: "system disk size can only change together with the image "
    "(system disk replacement)",
    ROLE_REQUIRES_VPC: "a role can only be attached to a VPC instance",
    VPC_ATTRIBUTE_WITHOUT_TARGET: "a vswitch (subnet) ID is required when modifying "
    "the instance VPC attribute",
}


class LifecycleGuard:
    """Static business rules tied to billing mode and field mutability."""

    def check_create(self, spec: InstanceSpec) -> None:
        """Reject specs that cannot be created as declared.

        Raises:
            SpecValidationError: A role is requested without VPC networking.
        """
        self._check_role(spec)

    def check_update(
        self,
        desired: InstanceSpec,
        observed: InstanceState,
        changes: ChangeSet,
    ) -> None:
        """Reject change sets that the platform cannot apply.

        Raises:
            SpecValidationError: The desired spec is inconsistent.
            BusinessRuleViolation: A billing or disk rule forbids the change.
        """
        iid = observed.instance_id
        self._check_role(desired, instance_id=iid)

        vpc = changes.get(ChangeKind.VPC_ATTRIBUTE)
        if vpc is not None and not vpc.after["vswitch_id"]:
            raise SpecValidationError(
                VPC_ATTRIBUTE_WITHOUT_TARGET, RULES[VPC_ATTRIBUTE_WITHOUT_TARGET], instance_id=iid
            )

        if changes.disk_resize is not None and ChangeKind.IMAGE not in changes:
            before, after = changes.disk_resize
            raise BusinessRuleViolation(
                DISK_SIZE_ONLY_CHANGE,
                f"{RULES[DISK_SIZE_ONLY_CHANGE]} (requested {before} -> {after} GiB)",
                instance_id=iid,
            )

        charge = changes.get(ChangeKind.CHARGE_TYPE)
        if (
            charge is not None
            and charge.before is InstanceChargeType.PREPAID
            and charge.after is InstanceChargeType.POSTPAID
        ):
            raise BusinessRuleViolation(
                CHARGE_TYPE_REGRESSION, RULES[CHARGE_TYPE_REGRESSION], instance_id=iid
            )

        if ChangeKind.INSTANCE_TYPE in changes and observed.is_prepaid:
            raise BusinessRuleViolation(
                TYPE_CHANGE_WHILE_PREPAID, RULES[TYPE_CHANGE_WHILE_PREPAID], instance_id=iid
            )

    def check_delete(self, observed: InstanceState) -> None:
        """Reject deleting an instance that bills in advance."""
        if observed.is_prepaid:
            raise BusinessRuleViolation(
                DELETE_WHILE_PREPAID, RULES[DELETE_WHILE_PREPAID], instance_id=observed.instance_id
            )

    @staticmethod
    def _check_role(spec: InstanceSpec, instance_id: str | None = None) -> None:
        if spec.role_name and not spec.has_vpc:
            raise SpecValidationError(
                ROLE_REQUIRES_VPC, RULES[ROLE_REQUIRES_VPC], instance_id=instance_id
            )


__all__ = [
    "RULES",
    "LifecycleGuard",
    "DELETE_WHILE_PREPAID",
    "CHARGE_TYPE_REGRESSION",
    "TYPE_CHANGE_WHILE_PREPAID",
    "DISK_SIZE_ONLY_CHANGE",
    "ROLE_REQUIRES_VPC",
    "VPC_ATTRIBUTE_WITHOUT_TARGET",
]
