"""Tests for status polling."""

import pytest

from conftest import FakeInstanceClient
from converge.base.deadline import Deadline
from converge.base.exceptions import (
    ComputeError,
    InstanceVanishedError,
    OperationCancelledError,
    ReconcileTimeoutError,
)
from converge.base.models import InstanceStatus
from converge.engine.waiter import StateWaiter


@pytest.fixture
def waiter(client, clock):
    return StateWaiter(client, interval=5, clock=clock, sleep=clock.sleep)


class TestWaitFor:
    def test_already_there(self, waiter, client, clock):
        iid = client.seed()
        state = waiter.wait_for(iid, InstanceStatus.RUNNING, timeout=60)
        assert state.status is InstanceStatus.RUNNING
        assert clock.sleeps == []

    def test_polls_until_target(self, waiter, client, clock):
        iid = client.seed(status=InstanceStatus.STOPPING)
        client.settle_after = 3
        state = waiter.wait_for(iid, InstanceStatus.STOPPED, timeout=60)
        assert state.status is InstanceStatus.STOPPED
        assert clock.sleeps == [5, 5, 5]

    def test_timeout(self, client, clock):
        client.settle_after = 1000
        iid = client.seed(status=InstanceStatus.PENDING)
        waiter = StateWaiter(client, interval=5, clock=clock, sleep=clock.sleep)
        with pytest.raises(ReconcileTimeoutError, match="Pending") as exc_info:
            waiter.wait_for(iid, InstanceStatus.STOPPED, timeout=12)
        assert exc_info.value.instance_id == iid
        # last pause shortened to the remaining budget
        assert clock.sleeps == [5, 5, 2]

    def test_vanished(self, waiter, client):
        iid = client.seed(status=InstanceStatus.STOPPING)
        del client.instances[iid]
        with pytest.raises(InstanceVanishedError) as exc_info:
            waiter.wait_for(iid, InstanceStatus.STOPPED, timeout=60)
        assert exc_info.value.instance_id == iid

    def test_describe_errors_propagate(self, waiter, client):
        iid = client.seed()
        client.fail("describe_instance", ComputeError("AccessDenied"))
        with pytest.raises(ComputeError, match="AccessDenied"):
            waiter.wait_for(iid, InstanceStatus.RUNNING, timeout=60)

    def test_cancelled(self, waiter, client):
        iid = client.seed()
        deadline = Deadline()
        deadline.cancel()
        with pytest.raises(OperationCancelledError):
            waiter.wait_for(iid, InstanceStatus.RUNNING, timeout=60, deadline=deadline)
        assert client.calls == []


class TestWaitUntil:
    def test_predicate(self, waiter, client):
        iid = client.seed(image_id="img-2")
        state = waiter.wait_until(iid, lambda s: s.image_id == "img-2", "image img-2", timeout=30)
        assert state.image_id == "img-2"

    def test_deadline_sleep_without_override(self):
        client = FakeInstanceClient(settle_after=1000)
        iid = client.seed(status=InstanceStatus.PENDING)
        waiter = StateWaiter(client, interval=0.01)
        with pytest.raises(ReconcileTimeoutError):
            waiter.wait_for(iid, InstanceStatus.STOPPED, timeout=0.05)
        assert client.count("describe_instance") >= 2
