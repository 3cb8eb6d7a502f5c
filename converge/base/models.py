"""
Desired and observed instance models.

:class:`InstanceSpec` is the validated desired configuration handed to the
reconciler; :class:`InstanceState` is what an instance client reports for a
live instance. Both are immutable pydantic models: a new spec supersedes the
old one wholesale and state is re-read on every pass.

Field mutability, as applied by the reconciler:

* in place: ``instance_name``, ``description``, ``host_name``, ``tags``,
  ``security_groups``, ``network`` bandwidth / internet charge type,
  ``billing`` (PostPaid → PrePaid only), ``role_name``
* with a stop/start cycle: ``image_id`` (with ``system_disk.size``),
  ``network.vswitch_id`` / ``network.private_ip``, ``password``,
  ``instance_type``
* force-new (recreate; enforced by the caller's schema layer): ``zone``,
  ``system_disk.category``, ``user_data``, ``key_name``, ``spot``
"""

from __future__ import annotations

from enum import Enum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class InstanceStatus(str, Enum):
    PENDING = "Pending"
    STARTING = "Starting"
    RUNNING = "Running"
    STOPPING = "Stopping"
    STOPPED = "Stopped"


class InstanceChargeType(str, Enum):
    PREPAID = "PrePaid"
    POSTPAID = "PostPaid"


class InternetChargeType(str, Enum):
    PAY_BY_TRAFFIC = "PayByTraffic"
    PAY_BY_BANDWIDTH = "PayByBandwidth"


class PeriodUnit(str, Enum):
    WEEK = "Week"
    MONTH = "Month"


class SpotStrategy(str, Enum):
    NO_SPOT = "NoSpot"
    SPOT_WITH_PRICE_LIMIT = "SpotWithPriceLimit"
    SPOT_AS_PRICE_GO = "SpotAsPriceGo"


class ChangeKind(str, Enum):
    """Independently triggerable mutation groups."""

    IMAGE = "Image"
    VPC_ATTRIBUTE = "VpcAttribute"
    PASSWORD = "Password"
    INSTANCE_TYPE = "InstanceType"
    NETWORK_SPEC = "NetworkSpec"
    CHARGE_TYPE = "ChargeType"
    SECURITY_GROUPS = "SecurityGroups"
    TAGS = "Tags"
    ATTRIBUTES = "Attributes"
    ROLE = "Role"


# ── Desired spec ──────────────────────────────────────────────────────
class SystemDisk(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    category: str = Field(default="cloud_efficiency", description="Disk category")
    size: int | None = Field(
        default=None, ge=40, le=500, description="Size in GiB; None keeps the image default"
    )


class NetworkSpec(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    # subnet_id is the older spelling of vswitch_id
    vswitch_id: str = Field(
        default="",
        validation_alias=AliasChoices("vswitch_id", "subnet_id"),
        description="VPC vswitch (subnet) ID; empty for classic networking",
    )
    private_ip: str = Field(default="", description="Private IP inside the vswitch")
    internet_charge_type: InternetChargeType = InternetChargeType.PAY_BY_TRAFFIC
    internet_max_bandwidth_in: int | None = Field(default=None, ge=1, le=200)
    internet_max_bandwidth_out: int = Field(default=0, ge=0, le=100)


class Billing(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    instance_charge_type: InstanceChargeType = InstanceChargeType.POSTPAID
    period: int = Field(default=1, ge=1, le=36)
    period_unit: PeriodUnit = PeriodUnit.MONTH
    include_data_disks: bool = True
    dry_run: bool = False


class SpotSpec(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    strategy: SpotStrategy = SpotStrategy.NO_SPOT
    price_limit: float | None = Field(default=None, gt=0)


class InstanceSpec(BaseModel):
    """Desired configuration of one compute instance."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    zone: str = ""
    image_id: str
    instance_type: str
    system_disk: SystemDisk = Field(default_factory=SystemDisk)
    network: NetworkSpec = Field(default_factory=NetworkSpec)
    billing: Billing = Field(default_factory=Billing)
    spot: SpotSpec = Field(default_factory=SpotSpec)
    security_groups: frozenset[str] = Field(min_length=1)
    instance_name: str = "ECS-Instance"
    description: str = ""
    host_name: str = ""
    password: str = Field(default="", repr=False)
    user_data: str = ""
    role_name: str = ""
    key_name: str = ""
    tags: dict[str, str] = Field(default_factory=dict)

    @property
    def is_prepaid(self) -> bool:
        return self.billing.instance_charge_type is InstanceChargeType.PREPAID

    @property
    def has_vpc(self) -> bool:
        return bool(self.network.vswitch_id)


# ── Observed state ────────────────────────────────────────────────────
class DiskState(BaseModel):
    """Root disk as reported by the platform; sizes are not bounded."""

    model_config = ConfigDict(frozen=True)

    category: str = ""
    size: int | None = None


class InstanceState(BaseModel):
    """Instance as reported by the remote platform at one point in time."""

    model_config = ConfigDict(frozen=True)

    instance_id: str
    status: InstanceStatus
    zone: str = ""
    image_id: str = ""
    instance_type: str = ""
    system_disk: DiskState = Field(default_factory=DiskState)
    vswitch_id: str = ""
    private_ip: str = ""
    public_ip: str | None = None
    internet_charge_type: InternetChargeType | None = None
    internet_max_bandwidth_in: int | None = None
    internet_max_bandwidth_out: int = 0
    instance_charge_type: InstanceChargeType = InstanceChargeType.POSTPAID
    security_groups: frozenset[str] = frozenset()
    instance_name: str = ""
    description: str = ""
    host_name: str = ""
    key_name: str = ""
    spot_strategy: SpotStrategy = SpotStrategy.NO_SPOT
    spot_price_limit: float | None = None
    role_name: str = ""
    tags: dict[str, str] = Field(default_factory=dict)

    @property
    def has_vpc(self) -> bool:
        return bool(self.vswitch_id)

    @property
    def is_prepaid(self) -> bool:
        return self.instance_charge_type is InstanceChargeType.PREPAID


class InstanceRecord(BaseModel):
    """Result of a reconciliation pass.

    The observed state plus the write-only spec values that cannot be read
    back from the platform.
    """

    model_config = ConfigDict(frozen=True)

    state: InstanceState
    password: str = Field(default="", repr=False)
    user_data: str = ""

    @property
    def instance_id(self) -> str:
        return self.state.instance_id


__all__ = [
    "InstanceStatus",
    "InstanceChargeType",
    "InternetChargeType",
    "PeriodUnit",
    "SpotStrategy",
    "ChangeKind",
    "SystemDisk",
    "DiskState",
    "NetworkSpec",
    "Billing",
    "SpotSpec",
    "InstanceSpec",
    "InstanceState",
    "InstanceRecord",
]
