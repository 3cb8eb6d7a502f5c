"""AWS EC2 implementation of the instance client blueprint.

EC2 differs from the ECS-style lifecycle the reconciler expects in a few
places, and this client bridges them:

* EC2 launches instances straight into ``running``. A fresh instance carries
  a reserved settle tag and :meth:`describe_instance` stops it the first time
  it is seen running, so it settles in ``stopped`` like any new instance.
* Elastic IPs allocated by :meth:`allocate_public_ip` are tagged with their
  instance and released by :meth:`delete_instance`.
* EC2 has no per-instance bandwidth caps, description or host name. Those
  values are kept in reserved ``converge:`` tags and reported back through
  :meth:`describe_instance`; :meth:`get_tags` hides them.
* PrePaid billing, vswitch moves, resizing on re-image and instance
  passwords have no EC2 equivalent and raise
  :class:`~converge.base.exceptions.UnsupportedOperationError`.
"""

from __future__ import annotations

from typing import Any, NoReturn

import boto3
from botocore.exceptions import ClientError

from converge.base.client import InstanceClientBlueprint
from converge.base.config import AWSConfig, validate_config
from converge.base.exceptions import (
    ComputeError,
    ConvergeError,
    InstanceNotFoundError,
    InternalTransientError,
    RoleAttachmentResponseError,
    ThrottlingError,
    UnsupportedOperationError,
)
from converge.base.logger import cv_logger
from converge.base.models import (
    DiskState,
    InstanceChargeType,
    InstanceSpec,
    InstanceState,
    InstanceStatus,
    InternetChargeType,
    PeriodUnit,
    SpotStrategy,
)
from converge.base.retry import retry

_ERROR_MAP: dict[str, type[ComputeError]] = {
    "InvalidInstanceID.NotFound": InstanceNotFoundError,
    "InvalidInstanceID.Malformed": InstanceNotFoundError,
    "RequestLimitExceeded": ThrottlingError,
    "Throttling": ThrottlingError,
    "ThrottlingException": ThrottlingError,
    "InternalError": InternalTransientError,
    "InternalFailure": InternalTransientError,
    "ServiceUnavailable": InternalTransientError,
    "Unavailable": InternalTransientError,
    # a fresh Elastic IP can take a moment to become visible
    "InvalidAllocationID.NotFound": InternalTransientError,
}

_STATUS_MAP: dict[str, InstanceStatus] = {
    "pending": InstanceStatus.PENDING,
    "running": InstanceStatus.RUNNING,
    "stopping": InstanceStatus.STOPPING,
    "shutting-down": InstanceStatus.STOPPING,
    "stopped": InstanceStatus.STOPPED,
}

_EBS_VOLUME_TYPES = frozenset({"standard", "gp2", "gp3", "io1", "io2", "st1", "sc1"})

RESERVED_PREFIX = "converge:"
_NAME_TAG = "Name"
_DESCRIPTION_TAG = f"{RESERVED_PREFIX}description"
_HOST_NAME_TAG = f"{RESERVED_PREFIX}host-name"
_CHARGE_TYPE_TAG = f"{RESERVED_PREFIX}internet-charge-type"
_BANDWIDTH_IN_TAG = f"{RESERVED_PREFIX}bandwidth-in"
_BANDWIDTH_OUT_TAG = f"{RESERVED_PREFIX}bandwidth-out"
# set at launch; the first describe that sees the instance running stops it
_SETTLE_TAG = f"{RESERVED_PREFIX}settle"
# marks Elastic IPs allocated for an instance so delete can release them
_OWNER_TAG = f"{RESERVED_PREFIX}instance-id"


def _handle(e: ClientError, msg: str, instance_id: str | None = None) -> NoReturn:
    code = e.response.get("Error", {}).get("Code", "")
    exc = _ERROR_MAP.get(code)
    raise (exc or ComputeError)(f"{msg} [{code}]", instance_id=instance_id) from e


def _tag_list(tags: dict[str, str]) -> list[dict[str, str]]:
    return [{"Key": key, "Value": val} for key, val in tags.items()]


def _is_user_tag(key: str) -> bool:
    return key != _NAME_TAG and not key.startswith(RESERVED_PREFIX)


def _check_user_tags(tags: dict[str, str], instance_id: str | None = None) -> None:
    reserved = [key for key in tags if not _is_user_tag(key)]
    if reserved:
        raise ComputeError(f"Tag keys {reserved} are reserved", instance_id=instance_id)


class EC2InstanceClient(InstanceClientBlueprint):
    """AWS EC2 instance client.

    Attributes:
        client: boto3 EC2 client.
    """

    def __init__(self, config: AWSConfig | dict[str, Any]) -> None:
        """Initialize the EC2 client.

        Args:
            config: :class:`AWSConfig` or a raw dict (``aws_access_key_id``,
                ``aws_secret_access_key``, ``region_name``).
        """
        if isinstance(config, dict):
            config = validate_config("aws", config)
        self.client = boto3.client(
            "ec2",
            aws_access_key_id=config.aws_access_key_id,
            aws_secret_access_key=config.aws_secret_access_key,
            region_name=config.region_name,
        )

    # ── lifecycle ─────────────────────────────────────────────────────

    def create_instance(self, spec: InstanceSpec) -> str:
        """Launch an EC2 instance from *spec* without waiting on it.

        The instance is launched carrying the settle tag. It is stopped by
        the first :meth:`describe_instance` that finds it running, so the
        caller's poll loop and deadline govern the whole settle.

        Returns:
            Instance ID.
        """
        if spec.is_prepaid:
            raise UnsupportedOperationError("EC2 instances cannot be launched PrePaid")
        if spec.password:
            raise UnsupportedOperationError("EC2 does not set instance passwords")
        params = self._run_params(spec)
        try:
            resp = self.client.run_instances(**params)
        except ClientError as e:
            _handle(e, f"Failed to create instance '{spec.instance_name}'")
        return resp["Instances"][0]["InstanceId"]  # type: ignore[no-any-return]

    def _run_params(self, spec: InstanceSpec) -> dict[str, Any]:
        _check_user_tags(spec.tags)
        net = spec.network
        tags = {**spec.tags, _NAME_TAG: spec.instance_name, _SETTLE_TAG: "stop"}
        tags.update(
            self._shadow_network_tags(
                net.internet_charge_type,
                net.internet_max_bandwidth_in,
                net.internet_max_bandwidth_out,
            )
        )
        if spec.description:
            tags[_DESCRIPTION_TAG] = spec.description
        if spec.host_name:
            tags[_HOST_NAME_TAG] = spec.host_name

        params: dict[str, Any] = {
            "ImageId": spec.image_id,
            "InstanceType": spec.instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "SecurityGroupIds": sorted(spec.security_groups)[:1],
            "TagSpecifications": [{"ResourceType": "instance", "Tags": _tag_list(tags)}],
        }
        if spec.zone:
            params["Placement"] = {"AvailabilityZone": spec.zone}
        if net.vswitch_id:
            params["SubnetId"] = net.vswitch_id
            if net.private_ip:
                params["PrivateIpAddress"] = net.private_ip
        if spec.key_name:
            params["KeyName"] = spec.key_name
        if spec.user_data:
            params["UserData"] = spec.user_data
        if spec.role_name:
            params["IamInstanceProfile"] = {"Name": spec.role_name}
        if spec.spot.strategy is not SpotStrategy.NO_SPOT:
            spot_options: dict[str, Any] = {
                # persistent + stop so the instance survives stop/start cycles
                "SpotInstanceType": "persistent",
                "InstanceInterruptionBehavior": "stop",
            }
            if (
                spec.spot.strategy is SpotStrategy.SPOT_WITH_PRICE_LIMIT
                and spec.spot.price_limit
            ):
                spot_options["MaxPrice"] = str(spec.spot.price_limit)
            params["InstanceMarketOptions"] = {"MarketType": "spot", "SpotOptions": spot_options}
        disk = spec.system_disk
        if disk.size is not None or disk.category in _EBS_VOLUME_TYPES:
            ebs: dict[str, Any] = {"DeleteOnTermination": True}
            if disk.size is not None:
                ebs["VolumeSize"] = disk.size
            if disk.category in _EBS_VOLUME_TYPES:
                ebs["VolumeType"] = disk.category
            params["BlockDeviceMappings"] = [
                {"DeviceName": self._root_device_name(spec.image_id), "Ebs": ebs}
            ]
        return params

    def _root_device_name(self, image_id: str) -> str:
        try:
            images = self.client.describe_images(ImageIds=[image_id]).get("Images", [])
        except ClientError as e:
            _handle(e, f"Failed to describe image '{image_id}'")
        if not images:
            raise ComputeError(f"Image '{image_id}' not found")
        return images[0].get("RootDeviceName", "/dev/xvda")  # type: ignore[no-any-return]

    def describe_instance(self, instance_id: str) -> InstanceState:
        """Describe an EC2 instance, including its root volume.

        Raises:
            InstanceNotFoundError: If the instance does not exist or was terminated.
        """
        try:
            resp = self.client.describe_instances(InstanceIds=[instance_id])
        except ClientError as e:
            _handle(e, f"Failed to describe instance '{instance_id}'", instance_id)
        reservations = resp.get("Reservations", [])
        if not reservations or not reservations[0].get("Instances"):
            raise InstanceNotFoundError(
                f"Instance '{instance_id}' not found", instance_id=instance_id
            )
        inst = reservations[0]["Instances"][0]
        status = _STATUS_MAP.get(inst["State"]["Name"])
        if status is None:
            # terminated instances linger in describe output for a while
            raise InstanceNotFoundError(
                f"Instance '{instance_id}' is {inst['State']['Name']}", instance_id=instance_id
            )

        tags = {tag["Key"]: tag["Value"] for tag in inst.get("Tags", [])}
        if _SETTLE_TAG in tags and status is InstanceStatus.RUNNING:
            self._settle(instance_id)
            status = InstanceStatus.STOPPING
        charge_type = tags.get(_CHARGE_TYPE_TAG)
        bandwidth_in = tags.get(_BANDWIDTH_IN_TAG)
        return InstanceState(
            instance_id=inst["InstanceId"],
            status=status,
            zone=inst.get("Placement", {}).get("AvailabilityZone", ""),
            image_id=inst.get("ImageId", ""),
            instance_type=inst.get("InstanceType", ""),
            system_disk=self._root_disk(inst),
            vswitch_id=inst.get("SubnetId", ""),
            private_ip=inst.get("PrivateIpAddress", ""),
            public_ip=inst.get("PublicIpAddress"),
            internet_charge_type=InternetChargeType(charge_type) if charge_type else None,
            internet_max_bandwidth_in=int(bandwidth_in) if bandwidth_in else None,
            internet_max_bandwidth_out=int(tags.get(_BANDWIDTH_OUT_TAG, 0)),
            instance_charge_type=InstanceChargeType.POSTPAID,
            security_groups=frozenset(g["GroupId"] for g in inst.get("SecurityGroups", [])),
            instance_name=tags.get(_NAME_TAG, ""),
            description=tags.get(_DESCRIPTION_TAG, ""),
            host_name=tags.get(_HOST_NAME_TAG, ""),
            key_name=inst.get("KeyName", ""),
            spot_strategy=(
                SpotStrategy.SPOT_AS_PRICE_GO
                if inst.get("InstanceLifecycle") == "spot"
                else SpotStrategy.NO_SPOT
            ),
        )

    def _settle(self, instance_id: str) -> None:
        try:
            self.client.stop_instances(InstanceIds=[instance_id])
            self.client.delete_tags(Resources=[instance_id], Tags=[{"Key": _SETTLE_TAG}])
        except ClientError as e:
            _handle(e, f"Failed to stop freshly launched instance '{instance_id}'", instance_id)

    def _root_disk(self, inst: dict[str, Any]) -> DiskState:
        root = inst.get("RootDeviceName")
        volume_id = None
        for mapping in inst.get("BlockDeviceMappings", []):
            if mapping.get("DeviceName") == root:
                volume_id = mapping.get("Ebs", {}).get("VolumeId")
                break
        if volume_id is None:
            return DiskState()
        try:
            volumes = self.client.describe_volumes(VolumeIds=[volume_id]).get("Volumes", [])
        except ClientError as e:
            _handle(e, f"Failed to describe root volume '{volume_id}'", inst["InstanceId"])
        if not volumes:
            return DiskState()
        return DiskState(category=volumes[0].get("VolumeType", ""), size=volumes[0].get("Size"))

    def start_instance(self, instance_id: str) -> None:
        try:
            self.client.start_instances(InstanceIds=[instance_id])
        except ClientError as e:
            _handle(e, f"Failed to start instance '{instance_id}'", instance_id)

    def stop_instance(self, instance_id: str, force: bool = False) -> None:
        """Stop a running EC2 instance (preserves EBS volumes)."""
        try:
            self.client.stop_instances(InstanceIds=[instance_id], Force=force)
        except ClientError as e:
            _handle(e, f"Failed to stop instance '{instance_id}'", instance_id)

    def delete_instance(self, instance_id: str) -> None:
        """Release the instance's Elastic IPs, then terminate it permanently."""
        try:
            resp = self.client.describe_addresses(
                Filters=[{"Name": f"tag:{_OWNER_TAG}", "Values": [instance_id]}]
            )
            for address in resp.get("Addresses", []):
                if address.get("AssociationId"):
                    self.client.disassociate_address(AssociationId=address["AssociationId"])
                self.client.release_address(AllocationId=address["AllocationId"])
        except ClientError as e:
            _handle(e, f"Failed to release public IPs of '{instance_id}'", instance_id)
        try:
            self.client.terminate_instances(InstanceIds=[instance_id])
        except ClientError as e:
            _handle(e, f"Failed to terminate instance '{instance_id}'", instance_id)

    # ── attributes ────────────────────────────────────────────────────

    def modify_attributes(
        self,
        instance_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        host_name: str | None = None,
        password: str | None = None,
    ) -> None:
        if password is not None:
            raise UnsupportedOperationError(
                "EC2 does not set instance passwords", instance_id=instance_id
            )
        tags: dict[str, str] = {}
        if name is not None:
            tags[_NAME_TAG] = name
        if description is not None:
            tags[_DESCRIPTION_TAG] = description
        if host_name is not None:
            tags[_HOST_NAME_TAG] = host_name
        if tags:
            self._create_tags(instance_id, tags)

    def replace_system_disk(
        self, instance_id: str, image_id: str, disk_size: int | None = None
    ) -> None:
        """Re-image the root volume through a replace-root-volume task."""
        if disk_size is not None:
            raise UnsupportedOperationError(
                "EC2 root volume replacement cannot resize the volume",
                instance_id=instance_id,
            )
        try:
            self.client.create_replace_root_volume_task(
                InstanceId=instance_id,
                ImageId=image_id,
                DeleteReplacedRootVolume=True,
            )
        except ClientError as e:
            _handle(e, f"Failed to replace root volume of '{instance_id}'", instance_id)

    def modify_vpc_attribute(
        self, instance_id: str, vswitch_id: str, private_ip: str | None = None
    ) -> None:
        raise UnsupportedOperationError(
            "EC2 instances cannot move to another subnet", instance_id=instance_id
        )

    def modify_instance_type(self, instance_id: str, instance_type: str) -> None:
        try:
            self.client.modify_instance_attribute(
                InstanceId=instance_id, InstanceType={"Value": instance_type}
            )
        except ClientError as e:
            _handle(e, f"Failed to change type of '{instance_id}' to {instance_type}", instance_id)

    def modify_network_spec(
        self,
        instance_id: str,
        *,
        internet_charge_type: InternetChargeType | None = None,
        bandwidth_in: int | None = None,
        bandwidth_out: int | None = None,
    ) -> None:
        """Record the network spec; EC2 does not cap public bandwidth."""
        tags = self._shadow_network_tags(internet_charge_type, bandwidth_in, bandwidth_out)
        if tags:
            self._create_tags(instance_id, tags)

    @staticmethod
    def _shadow_network_tags(
        internet_charge_type: InternetChargeType | None,
        bandwidth_in: int | None,
        bandwidth_out: int | None,
    ) -> dict[str, str]:
        tags: dict[str, str] = {}
        if internet_charge_type is not None:
            tags[_CHARGE_TYPE_TAG] = InternetChargeType(internet_charge_type).value
        if bandwidth_in is not None:
            tags[_BANDWIDTH_IN_TAG] = str(bandwidth_in)
        if bandwidth_out is not None:
            tags[_BANDWIDTH_OUT_TAG] = str(bandwidth_out)
        return tags

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
        raise UnsupportedOperationError(
            "EC2 instances cannot be converted to PrePaid billing", instance_id=instance_id
        )

    def allocate_public_ip(self, instance_id: str) -> str | None:
        """Allocate an Elastic IP and associate it with the instance.

        The address is released again if it cannot be associated.
        """
        try:
            address = self.client.allocate_address(
                Domain="vpc",
                TagSpecifications=[
                    {
                        "ResourceType": "elastic-ip",
                        "Tags": _tag_list({_OWNER_TAG: instance_id}),
                    }
                ],
            )
        except ClientError as e:
            _handle(e, f"Failed to allocate a public IP for '{instance_id}'", instance_id)
        allocation_id = address["AllocationId"]
        try:
            self._associate_address(instance_id, allocation_id)
        except ConvergeError:
            self._release_address(instance_id, allocation_id)
            raise
        return address.get("PublicIp")  # type: ignore[no-any-return]

    def _release_address(self, instance_id: str, allocation_id: str) -> None:
        try:
            self.client.release_address(AllocationId=allocation_id)
        except ClientError as e:
            # the association error is the one worth raising
            cv_logger.error(
                f"Failed to release {allocation_id}: {e}",
                instance_id=instance_id,
                phase="allocate-public-ip",
            )

    @retry(timeout=30.0, interval=2.0)
    def _associate_address(self, instance_id: str, allocation_id: str) -> None:
        try:
            self.client.associate_address(InstanceId=instance_id, AllocationId=allocation_id)
        except ClientError as e:
            _handle(e, f"Failed to associate {allocation_id} with '{instance_id}'", instance_id)

    # ── security groups ───────────────────────────────────────────────

    def join_security_groups(self, instance_id: str, group_ids: list[str]) -> None:
        current = self._security_groups(instance_id)
        self._set_security_groups(instance_id, current | set(group_ids))

    def leave_security_groups(self, instance_id: str, group_ids: list[str]) -> None:
        current = self._security_groups(instance_id)
        remaining = current - set(group_ids)
        if not remaining:
            raise ComputeError(
                "An instance must stay in at least one security group", instance_id=instance_id
            )
        self._set_security_groups(instance_id, remaining)

    def _security_groups(self, instance_id: str) -> set[str]:
        try:
            resp = self.client.describe_instance_attribute(
                InstanceId=instance_id, Attribute="groupSet"
            )
        except ClientError as e:
            _handle(e, f"Failed to read security groups of '{instance_id}'", instance_id)
        return {g["GroupId"] for g in resp.get("Groups", [])}

    def _set_security_groups(self, instance_id: str, group_ids: set[str]) -> None:
        try:
            self.client.modify_instance_attribute(InstanceId=instance_id, Groups=sorted(group_ids))
        except ClientError as e:
            _handle(e, f"Failed to set security groups of '{instance_id}'", instance_id)

    # ── tags / role ───────────────────────────────────────────────────

    def set_tags(self, instance_id: str, tags: dict[str, str]) -> None:
        _check_user_tags(tags, instance_id)
        self._create_tags(instance_id, tags)

    def _create_tags(self, instance_id: str, tags: dict[str, str]) -> None:
        try:
            self.client.create_tags(Resources=[instance_id], Tags=_tag_list(tags))
        except ClientError as e:
            _handle(e, f"Failed to tag instance '{instance_id}'", instance_id)

    def remove_tags(self, instance_id: str, keys: list[str]) -> None:
        try:
            self.client.delete_tags(Resources=[instance_id], Tags=[{"Key": key} for key in keys])
        except ClientError as e:
            _handle(e, f"Failed to untag instance '{instance_id}'", instance_id)

    def get_tags(self, instance_id: str) -> dict[str, str]:
        try:
            resp = self.client.describe_tags(
                Filters=[
                    {"Name": "resource-id", "Values": [instance_id]},
                    {"Name": "resource-type", "Values": ["instance"]},
                ]
            )
        except ClientError as e:
            _handle(e, f"Failed to read tags of '{instance_id}'", instance_id)
        return {
            tag["Key"]: tag["Value"] for tag in resp.get("Tags", []) if _is_user_tag(tag["Key"])
        }

    def describe_role_attachment(self, instance_id: str) -> str:
        """Return the name of the attached instance profile, or ``""``."""
        try:
            resp = self.client.describe_iam_instance_profile_associations(
                Filters=[{"Name": "instance-id", "Values": [instance_id]}]
            )
        except ClientError as e:
            _handle(e, f"Failed to read role of '{instance_id}'", instance_id)
        for assoc in resp.get("IamInstanceProfileAssociations", []):
            if assoc.get("State") != "associated":
                continue
            arn = assoc.get("IamInstanceProfile", {}).get("Arn", "")
            if "/" not in arn:
                raise RoleAttachmentResponseError(
                    f"Unexpected instance profile ARN {arn!r}", instance_id=instance_id
                )
            return arn.rsplit("/", 1)[1]
        return ""

    def attach_role(self, instance_id: str, role_name: str) -> None:
        try:
            self.client.associate_iam_instance_profile(
                IamInstanceProfile={"Name": role_name}, InstanceId=instance_id
            )
        except ClientError as e:
            _handle(e, f"Failed to attach role '{role_name}' to '{instance_id}'", instance_id)
