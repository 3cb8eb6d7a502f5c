"""
Create / Update / Delete / Read workflows for one compute instance.

A pass is a strictly ordered sequence of blocking remote calls and status
waits. Reconciling distinct instances concurrently needs no coordination;
overlapping passes for the same instance must be serialized by the caller.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from converge.base.async_support import AsyncMixin
from converge.base.client import InstanceClientBlueprint
from converge.base.config import ReconcilerSettings
from converge.base.deadline import Deadline
from converge.base.exceptions import (
    ComputeError,
    ConvergeError,
    DeadlineExceededError,
    InstanceNotFoundError,
    InstanceVanishedError,
    ReconcileTimeoutError,
    RoleAttachmentResponseError,
    UnsupportedOperationError,
)
from converge.base.logger import cv_logger, new_request_id
from converge.base.models import (
    ChangeKind,
    InstanceRecord,
    InstanceSpec,
    InstanceState,
    InstanceStatus,
)
from converge.base.retry import (
    ErrorClass,
    RetryExecutor,
    RetryPolicy,
    classify_error,
)
from converge.engine.changeset import (
    ChangeSet,
    ChangeSetComputer,
    group_diff,
    tag_diff,
)
from converge.engine.guard import LifecycleGuard
from converge.engine.waiter import StateWaiter


def classify_role_lookup(exc: BaseException) -> ErrorClass:
    """Role lookups sometimes come back malformed; a re-read fixes them."""
    if isinstance(exc, RoleAttachmentResponseError):
        return ErrorClass.INTERNAL_TRANSIENT
    return classify_error(exc)


def classify_delete(exc: BaseException) -> ErrorClass:
    """Deletion keeps retrying stop/delete hiccups until its budget runs out."""
    if isinstance(exc, DeadlineExceededError):
        return ErrorClass.FATAL
    if isinstance(exc, ReconcileTimeoutError):
        return ErrorClass.INTERNAL_TRANSIENT
    kind = classify_error(exc)
    if (
        kind is ErrorClass.FATAL
        and isinstance(exc, ComputeError)
        and not isinstance(exc, (InstanceVanishedError, UnsupportedOperationError))
    ):
        return ErrorClass.INTERNAL_TRANSIENT
    return kind


class _Pass:
    """Per-pass context: correlation ID, instance and deadline."""

    def __init__(self, instance_id: str | None, deadline: Deadline | None) -> None:
        self.request_id = new_request_id()
        self.instance_id = instance_id
        self.deadline = deadline or Deadline.never()

    def log(self, message: str, **kwargs) -> None:
        cv_logger.info(message, instance_id=self.instance_id, request_id=self.request_id, **kwargs)


class Reconciler(AsyncMixin):
    """Converge a remote instance to an :class:`InstanceSpec`.

    Args:
        client: Instance client for the target platform.
        settings: Timing budgets; defaults to :class:`ReconcilerSettings`.
        guard: Business rule checker.
        changes: Change set computer.
        executor: Retry executor for throttling-prone calls.
        waiter: Status waiter; built from *client* and
            ``settings.poll_interval`` when omitted.
    """

    __async_methods__ = ("create", "update", "delete", "read")

    def __init__(
        self,
        client: InstanceClientBlueprint,
        settings: ReconcilerSettings | None = None,
        *,
        guard: LifecycleGuard | None = None,
        changes: ChangeSetComputer | None = None,
        executor: RetryExecutor | None = None,
        waiter: StateWaiter | None = None,
    ) -> None:
        self.client = client
        self.settings = settings or ReconcilerSettings()
        self.guard = guard or LifecycleGuard()
        self.changes = changes or ChangeSetComputer()
        self.executor = executor or RetryExecutor()
        self.waiter = waiter or StateWaiter(client, interval=self.settings.poll_interval)
        self._modify_policy = RetryPolicy(
            timeout=self.settings.modify_timeout,
            interval=self.settings.retry_interval,
        )
        self._role_policy = RetryPolicy(
            timeout=self.settings.modify_timeout,
            interval=self.settings.poll_interval,
            classify=classify_role_lookup,
        )
        self._delete_policy = RetryPolicy(
            timeout=self.settings.delete_timeout,
            interval=self.settings.retry_interval,
            classify=classify_delete,
        )

    # ── workflows ─────────────────────────────────────────────────────

    def create(self, spec: InstanceSpec, deadline: Deadline | None = None) -> InstanceRecord:
        """Create an instance, boot it and apply everything creation can't set.

        No rollback is attempted on failure; the raised error carries the
        new ``instance_id`` so the caller can keep converging it.
        """
        run = _Pass(None, deadline)
        with self._phase(run, "validate"):
            self.guard.check_create(spec)

        with self._phase(run, "create"):
            run.deadline.check("create")
            run.instance_id = self.client.create_instance(spec)
            if not run.instance_id:
                raise ComputeError("Platform returned no instance ID for the new instance")
        run.log(f"Created instance from image {spec.image_id}", phase="create")

        iid = run.instance_id
        # New instances always pass through Pending -> Stopped first.
        with self._phase(run, "wait-stopped"):
            self.waiter.wait_for(
                iid, InstanceStatus.STOPPED, self.settings.stop_timeout, run.deadline
            )

        if spec.network.internet_max_bandwidth_out > 0:
            with self._phase(run, "allocate-public-ip"):
                self.client.allocate_public_ip(iid)

        with self._phase(run, "start"):
            run.deadline.check("start")
            self.client.start_instance(iid)
        with self._phase(run, "wait-running"):
            self.waiter.wait_for(
                iid, InstanceStatus.RUNNING, self.settings.start_timeout, run.deadline
            )

        return self._update(run, spec, applied=spec)

    def update(
        self,
        instance_id: str,
        desired: InstanceSpec,
        applied: InstanceSpec | None = None,
        deadline: Deadline | None = None,
    ) -> InstanceRecord:
        """Apply the difference between *desired* and the observed instance.

        Args:
            instance_id: Instance to converge.
            desired: Target configuration.
            applied: Spec applied by the previous pass; supplies values the
                platform never reports back (the password).
            deadline: Overall deadline / cancellation for the pass.

        Returns:
            The re-read instance as the new baseline.
        """
        return self._update(_Pass(instance_id, deadline), desired, applied)

    def delete(self, instance_id: str, deadline: Deadline | None = None) -> None:
        """Stop and delete an instance. Deleting a missing instance succeeds."""
        run = _Pass(instance_id, deadline)
        with self._phase(run, "describe"):
            try:
                state = self.client.describe_instance(instance_id)
            except InstanceNotFoundError:
                run.log("Instance already gone", phase="describe")
                return

        with self._phase(run, "validate"):
            self.guard.check_delete(state)

        with self._phase(run, "delete"):
            self.executor.run(
                lambda: self._delete_attempt(run),
                self._delete_policy,
                run.deadline,
                description=f"delete {instance_id}",
            )
        run.log("Instance deleted", phase="delete")

    def read(
        self,
        instance_id: str,
        applied: InstanceSpec | None = None,
        deadline: Deadline | None = None,
    ) -> InstanceRecord | None:
        """Return the observed instance, or ``None`` when it no longer exists."""
        run = _Pass(instance_id, deadline)
        with self._phase(run, "describe"):
            try:
                state = self._observe(run)
            except InstanceNotFoundError:
                run.log("Instance not found", phase="describe")
                return None
        return self._record(state, applied)

    # ── update steps ──────────────────────────────────────────────────

    def _update(
        self, run: _Pass, desired: InstanceSpec, applied: InstanceSpec | None
    ) -> InstanceRecord:
        with self._phase(run, "describe"):
            observed = self._observe(run)
        with self._phase(run, "plan"):
            changes = self.changes.compute(desired, observed, applied)
            self.guard.check_update(desired, observed, changes)
        if not changes:
            run.log("Instance already matches the desired spec", phase="plan")
        else:
            run.log(
                "Pending changes: " + ", ".join(kind.value for kind in changes.kinds),
                phase="plan",
            )

        self._apply_tags(run, changes)
        self._apply_security_groups(run, changes)
        self._apply_attributes(run, changes)

        if changes.requires_reboot:
            self._reboot_cycle(run, desired, changes)

        self._apply_network_spec(run, changes)
        self._apply_charge_type(run, desired, changes)
        self._apply_role(run, changes)

        with self._phase(run, "refresh"):
            state = self._observe(run)
        return self._record(state, desired)

    def _apply_tags(self, run: _Pass, changes: ChangeSet) -> None:
        change = changes.get(ChangeKind.TAGS)
        if change is None:
            return
        to_set, to_remove = tag_diff(change.before, change.after)
        with self._phase(run, "tags", ChangeKind.TAGS):
            if to_set:
                self.client.set_tags(run.instance_id, to_set)
            if to_remove:
                self.client.remove_tags(run.instance_id, to_remove)

    def _apply_security_groups(self, run: _Pass, changes: ChangeSet) -> None:
        change = changes.get(ChangeKind.SECURITY_GROUPS)
        if change is None:
            return
        join, leave = group_diff(change.before, change.after)
        with self._phase(run, "security-groups", ChangeKind.SECURITY_GROUPS):
            if join:
                self.client.join_security_groups(run.instance_id, join)
            if leave:
                self.client.leave_security_groups(run.instance_id, leave)

    def _apply_attributes(self, run: _Pass, changes: ChangeSet) -> None:
        change = changes.get(ChangeKind.ATTRIBUTES)
        if change is None:
            return
        after = change.after
        with self._phase(run, "attributes", ChangeKind.ATTRIBUTES):
            self.client.modify_attributes(
                run.instance_id,
                name=after.get("instance_name"),
                description=after.get("description"),
                host_name=after.get("host_name"),
            )

    def _reboot_cycle(self, run: _Pass, desired: InstanceSpec, changes: ChangeSet) -> None:
        """Stop once, apply every reboot-class change, start once."""
        iid = run.instance_id
        run.log("Stopping instance to apply reboot-class changes", phase="stop")
        with self._phase(run, "stop"):
            state = self.client.describe_instance(iid)
            if state.status is InstanceStatus.STARTING:
                state = self.waiter.wait_for(
                    iid, InstanceStatus.RUNNING, self.settings.start_timeout, run.deadline
                )
            if state.status is InstanceStatus.RUNNING:
                self.client.stop_instance(iid, force=False)
        with self._phase(run, "wait-stopped"):
            self.waiter.wait_for(
                iid, InstanceStatus.STOPPED, self.settings.stop_timeout, run.deadline
            )

        for change in changes.reboot_changes:
            with self._phase(run, "apply", change.kind):
                run.deadline.check(f"apply {change.kind.value}")
                self._apply_reboot_change(run, desired, changes, change.kind)

        run.log("Starting instance after reboot-class changes", phase="start")
        with self._phase(run, "start"):
            self.client.start_instance(iid)
        with self._phase(run, "wait-running"):
            self.waiter.wait_for(
                iid, InstanceStatus.RUNNING, self.settings.start_timeout, run.deadline
            )

    def _apply_reboot_change(
        self, run: _Pass, desired: InstanceSpec, changes: ChangeSet, kind: ChangeKind
    ) -> None:
        iid = run.instance_id
        if kind is ChangeKind.IMAGE:
            # None keeps the current disk size
            size = changes.disk_resize[1] if changes.disk_resize else None
            self.client.replace_system_disk(iid, desired.image_id, size)
            self.waiter.wait_until(
                iid,
                lambda state: state.image_id == desired.image_id,
                f"image {desired.image_id}",
                self.settings.image_timeout,
                run.deadline,
            )
        elif kind is ChangeKind.VPC_ATTRIBUTE:
            net = desired.network
            self.client.modify_vpc_attribute(iid, net.vswitch_id, net.private_ip or None)
        elif kind is ChangeKind.PASSWORD:
            self.client.modify_attributes(iid, password=desired.password)
        elif kind is ChangeKind.INSTANCE_TYPE:
            self.executor.run(
                lambda: self.client.modify_instance_type(iid, desired.instance_type),
                self._modify_policy,
                run.deadline,
                description=f"modify instance type of {iid}",
            )

    def _apply_network_spec(self, run: _Pass, changes: ChangeSet) -> None:
        change = changes.get(ChangeKind.NETWORK_SPEC)
        if change is None:
            return
        iid = run.instance_id
        with self._phase(run, "network-spec", ChangeKind.NETWORK_SPEC):
            self.executor.run(
                lambda: self.client.modify_network_spec(iid, **change.after),
                self._modify_policy,
                run.deadline,
                description=f"modify network spec of {iid}",
            )
        if changes.allocates_public_ip:
            with self._phase(run, "allocate-public-ip", ChangeKind.NETWORK_SPEC):
                self.client.allocate_public_ip(iid)

    def _apply_charge_type(self, run: _Pass, desired: InstanceSpec, changes: ChangeSet) -> None:
        if ChangeKind.CHARGE_TYPE not in changes:
            return
        iid = run.instance_id
        billing = desired.billing
        with self._phase(run, "charge-type", ChangeKind.CHARGE_TYPE):
            self.executor.run(
                lambda: self.client.modify_charge_type(
                    iid,
                    period=billing.period,
                    period_unit=billing.period_unit,
                    include_data_disks=billing.include_data_disks,
                    auto_pay=True,
                    dry_run=billing.dry_run,
                ),
                self._modify_policy,
                run.deadline,
                description=f"modify charge type of {iid}",
            )

    def _apply_role(self, run: _Pass, changes: ChangeSet) -> None:
        change = changes.get(ChangeKind.ROLE)
        if change is None:
            return
        with self._phase(run, "role", ChangeKind.ROLE):
            self.client.attach_role(run.instance_id, change.after)

    # ── helpers ───────────────────────────────────────────────────────

    def _delete_attempt(self, run: _Pass) -> None:
        iid = run.instance_id
        try:
            state = self.client.describe_instance(iid)
        except InstanceNotFoundError:
            return
        if state.status is not InstanceStatus.STOPPED:
            self.client.stop_instance(iid, force=True)
            self.waiter.wait_for(
                iid, InstanceStatus.STOPPED, self.settings.stop_timeout, run.deadline
            )
        try:
            self.client.delete_instance(iid)
        except InstanceNotFoundError:
            return

    def _observe(self, run: _Pass) -> InstanceState:
        """Describe the instance together with its role and tags."""
        iid = run.instance_id
        state = self.client.describe_instance(iid)
        role_name = ""
        if state.has_vpc:
            role_name = self.executor.run(
                lambda: self.client.describe_role_attachment(iid),
                self._role_policy,
                run.deadline,
                description=f"describe role attachment of {iid}",
            )
        tags = self.client.get_tags(iid)
        return state.model_copy(update={"role_name": role_name, "tags": tags})

    @staticmethod
    def _record(state: InstanceState, spec: InstanceSpec | None) -> InstanceRecord:
        if spec is None:
            return InstanceRecord(state=state)
        return InstanceRecord(state=state, password=spec.password, user_data=spec.user_data)

    @contextmanager
    def _phase(
        self, run: _Pass, phase: str, change_kind: ChangeKind | None = None
    ) -> Iterator[None]:
        """Attach workflow context to errors leaving *phase*."""
        try:
            yield
        except ConvergeError as exc:
            if exc.phase is None:
                exc.phase = phase
                exc.change_kind = change_kind.value if change_kind else None
            if exc.instance_id is None:
                exc.instance_id = run.instance_id
            cv_logger.error(
                f"{type(exc).__name__} during {phase}: {exc}",
                instance_id=run.instance_id,
                phase=phase,
                change_kind=exc.change_kind,
                request_id=run.request_id,
            )
            raise
