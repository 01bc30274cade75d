import asyncio
import copy
from datetime import datetime, timedelta, timezone

import pytest

from vkubelet.errdefs import ConflictError, NotFoundError
from vkubelet.lease import (
    MAX_BACKOFF,
    MAX_UPDATE_RETRIES,
    NAMESPACE_NODE_LEASE,
    LeaseController,
    NodeNotReadyError,
    RealClock,
)
from vkubelet.ping import PingResult

START = datetime(2020, 3, 20, 21, 7, 34, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self):
        self.current = START
        self.sleeps = []

    def now(self):
        return self.current

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=seconds)
        await asyncio.sleep(0)


class FakeLeases:
    def __init__(self):
        self.store = {}
        self.updates = 0
        self.update_errors = []
        self.get_errors = []

    async def get(self, name):
        if self.get_errors:
            raise self.get_errors.pop(0)
        if name not in self.store:
            raise NotFoundError(f"lease {name} not found")
        return copy.deepcopy(self.store[name])

    async def create(self, lease):
        self.store[lease["metadata"]["name"]] = copy.deepcopy(lease)
        return copy.deepcopy(lease)

    async def update(self, lease):
        self.updates += 1
        if self.update_errors:
            err = self.update_errors.pop(0)
            if err is not None:
                raise err
        self.store[lease["metadata"]["name"]] = copy.deepcopy(lease)
        return copy.deepcopy(lease)


class FakePing:
    def __init__(self, error=None):
        self.error = error

    async def get_result(self):
        return PingResult(START, self.error)


class FakeNodeController:
    def __init__(self, node, ping_error=None):
        self.node = node
        self.ping_controller = FakePing(ping_error)

    def get_server_node(self):
        if self.node is None:
            raise RuntimeError("Server node does not yet exist")
        return copy.deepcopy(self.node)


NODE = {"metadata": {"name": "vk-node", "uid": "uid-1"}}


def make(node=NODE, ping_error=None):
    clock = FakeClock()
    leases = FakeLeases()
    nc = FakeNodeController(node, ping_error)
    return LeaseController(clock, leases, 40, 10, nc), clock, leases


@pytest.mark.parametrize("duration, interval", [(0, 1), (-5, 1), (40, 0), (10, 10), (10, 20)])
def test_invalid_configuration(duration, interval):
    with pytest.raises(ValueError):
        LeaseController(FakeClock(), FakeLeases(), duration, interval, None)


def test_real_clock_now_is_current_aware_time():
    difference = RealClock().now() - datetime.now(timezone.utc)
    assert abs(difference) < timedelta(seconds=5)


def test_new_lease_from_scratch():
    lc, clock, _ = make()
    lease = lc.new_lease(NODE, None)
    assert lease["metadata"]["name"] == "vk-node"
    assert lease["metadata"]["namespace"] == NAMESPACE_NODE_LEASE
    assert lease["spec"]["holderIdentity"] == "vk-node"
    assert lease["spec"]["leaseDurationSeconds"] == 40
    assert lease["spec"]["renewTime"] == "2020-03-20T21:07:34.000000Z"
    owner = lease["metadata"]["ownerReferences"][0]
    assert owner == {"apiVersion": "v1", "kind": "Node", "name": "vk-node", "uid": "uid-1"}


def test_new_lease_copies_base():
    lc, clock, _ = make()
    base = lc.new_lease(NODE, None)
    base["metadata"]["ownerReferences"] = [{"kind": "Other"}]
    snapshot = copy.deepcopy(base)
    clock.current += timedelta(seconds=5)
    lease = lc.new_lease(NODE, base)
    assert base == snapshot
    assert lease["metadata"]["ownerReferences"] == [{"kind": "Other"}]
    assert lease["spec"]["renewTime"] > base["spec"]["renewTime"]


@pytest.mark.asyncio
async def test_ensure_lease_creates_then_recovers():
    lc, _, leases = make()
    lease, created = await lc.ensure_lease(NODE)
    assert created is True
    assert "vk-node" in leases.store
    again, created_again = await lc.ensure_lease(NODE)
    assert created_again is False
    assert again == lease


@pytest.mark.asyncio
async def test_ensure_lease_propagates_unexpected_error():
    lc, _, leases = make()
    leases.get_errors = [RuntimeError("apiserver down")]
    with pytest.raises(RuntimeError, match="apiserver down"):
        await lc.ensure_lease(NODE)


@pytest.mark.asyncio
async def test_backoff_ensure_lease_retries_with_growing_waits():
    lc, clock, leases = make()
    leases.get_errors = [RuntimeError("a"), RuntimeError("b"), RuntimeError("c")]
    lease, created = await lc.backoff_ensure_lease(NODE)
    assert created is True
    assert lease["metadata"]["name"] == "vk-node"
    assert len(clock.sleeps) == 3
    assert clock.sleeps[1] == 2 * clock.sleeps[0]
    assert clock.sleeps[2] == 2 * clock.sleeps[1]
    assert all(s <= MAX_BACKOFF for s in clock.sleeps)


@pytest.mark.asyncio
async def test_sync_creates_then_updates():
    lc, clock, leases = make()
    await lc.sync()
    assert lc.latest_lease is not None
    first_renew = leases.store["vk-node"]["spec"]["renewTime"]
    assert leases.updates == 0

    clock.current += timedelta(seconds=10)
    await lc.sync()
    assert leases.updates == 1
    assert leases.store["vk-node"]["spec"]["renewTime"] > first_renew
    assert lc.latest_lease == leases.store["vk-node"]


@pytest.mark.asyncio
async def test_sync_skips_on_ping_error():
    lc, _, leases = make(ping_error=RuntimeError("unhealthy"))
    await lc.sync()
    assert leases.store == {}
    assert lc.latest_lease is None


@pytest.mark.asyncio
async def test_sync_skips_without_server_node():
    lc, _, leases = make(node=None)
    await lc.sync()
    assert leases.store == {}


@pytest.mark.asyncio
async def test_sync_updates_existing_lease_not_created_by_us():
    lc, _, leases = make()
    leases.store["vk-node"] = lc.new_lease(NODE, None)
    await lc.sync()
    assert leases.updates == 1
    assert lc.latest_lease == leases.store["vk-node"]


@pytest.mark.asyncio
async def test_retry_update_gives_up():
    lc, _, leases = make()
    leases.update_errors = [RuntimeError("nope")] * MAX_UPDATE_RETRIES
    with pytest.raises(RuntimeError, match=f"failed after {MAX_UPDATE_RETRIES} attempts"):
        await lc.retry_update_lease(NODE, None)
    assert leases.updates == MAX_UPDATE_RETRIES


@pytest.mark.asyncio
async def test_retry_update_stops_on_timeout():
    lc, _, leases = make()
    leases.update_errors = [TimeoutError("deadline")]
    with pytest.raises(RuntimeError, match="deadline"):
        await lc.retry_update_lease(NODE, None)
    assert leases.updates == 1


@pytest.mark.asyncio
async def test_retry_update_refetches_on_conflict():
    lc, _, leases = make()
    await lc.ensure_lease(NODE)
    leases.update_errors = [ConflictError("stale"), None]
    await lc.retry_update_lease(NODE, None)
    assert leases.updates == 2
    assert lc.latest_lease == leases.store["vk-node"]


@pytest.mark.asyncio
async def test_run_renews_until_cancelled():
    lc, clock, leases = make()
    task = asyncio.create_task(lc.run())
    await asyncio.sleep(0.02)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert "vk-node" in leases.store
    assert clock.sleeps
    assert all(s == lc.renew_interval for s in clock.sleeps)


def test_node_not_ready_error():
    cause = RuntimeError("ping failed")
    err = NodeNotReadyError(PingResult(START, cause))
    assert str(err) == "New node not ready error: ping failed"
    assert err.__cause__ is cause
    assert err.ping_result.error is cause