"""Controller that keeps a node's lease renewed while the node is healthy."""

from __future__ import annotations

import asyncio
import copy
import logging
from datetime import datetime, timezone

from vkubelet.errdefs import is_conflict, is_not_found

logger = logging.getLogger(__name__)

DEFAULT_RENEW_INTERVAL_FRACTION = 0.25
DEFAULT_LEASE_DURATION = 40
MAX_UPDATE_RETRIES = 5
MAX_BACKOFF = 7.0
NAMESPACE_NODE_LEASE = "kube-node-lease"


def _micro_time(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class RealClock:
    """Wall-clock time and real sleeping."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class NodeNotReadyError(Exception):
    """The node is not ready because its ping is failing."""

    def __init__(self, ping_result):
        self.ping_result = ping_result
        super().__init__(f"New node not ready error: {ping_result.error}")
        self.__cause__ = ping_result.error


class LeaseController:
    """Maintains a server-side lease for a node as long as the node is healthy.

    The node controller must offer ``ping_controller`` (with an awaitable
    ``get_result()``) and ``get_server_node()`` returning a copy of the node.
    """

    def __init__(self, clock, client, lease_duration_seconds: int, renew_interval: float, node_controller):
        if lease_duration_seconds <= 0:
            raise ValueError(
                f"lease duration seconds {lease_duration_seconds} is invalid, it must be > 0"
            )
        if renew_interval == 0:
            raise ValueError(f"lease renew interval {renew_interval}s is invalid, it must be > 0")
        if lease_duration_seconds <= renew_interval:
            raise ValueError(
                f"lease renew interval {renew_interval}s is invalid, it must be less than "
                f"lease duration seconds {lease_duration_seconds}"
            )
        self._clock = clock
        self._client = client
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_interval = renew_interval
        self._node_controller = node_controller
        self.latest_lease: dict | None = None

    async def run(self) -> None:
        """Renew the lease on every interval until cancelled."""
        while True:
            await self.sync()
            await self._clock.sleep(self.renew_interval)

    async def sync(self) -> None:
        """Renew the lease once, creating it if needed."""
        try:
            result = await self._node_controller.ping_controller.get_result()
        except Exception as err:  # noqa: BLE001
            logger.error("Could not get ping status: %s", err)
            return
        if result.error is not None:
            logger.error("Ping result is not clean, not updating lease: %s", result.error)
            return

        try:
            node = self._node_controller.get_server_node()
        except Exception as err:  # noqa: BLE001
            logger.error("Could not get server node: %s", err)
            return
        if node is None:
            logger.error("servernode is null")
            return

        if self.latest_lease is not None:
            try:
                await self.retry_update_lease(node, self.new_lease(node, self.latest_lease))
                return
            except Exception as err:  # noqa: BLE001
                logger.info("failed to update lease using latest lease, fallback to ensure lease: %s", err)

        lease, created = await self.backoff_ensure_lease(node)
        self.latest_lease = lease
        if not created and lease is not None:
            try:
                await self.retry_update_lease(node, lease)
            except Exception as err:  # noqa: BLE001
                logger.error("Will retry after %ss: %s", self.renew_interval, err)

    async def backoff_ensure_lease(self, node: dict) -> tuple[dict | None, bool]:
        """Ensure the lease exists, retrying with exponentially growing waits."""
        delay = 0.1
        while True:
            try:
                return await self.ensure_lease(node)
            except Exception as err:  # noqa: BLE001
                delay = min(2 * delay, MAX_BACKOFF)
                logger.error("failed to ensure node lease exists, will retry in %ss: %s", delay, err)
                await self._clock.sleep(delay)

    async def ensure_lease(self, node: dict) -> tuple[dict | None, bool]:
        """Return the lease and whether this call created it."""
        name = node["metadata"]["name"]
        try:
            lease = await self._client.get(name)
        except Exception as err:
            if not is_not_found(err):
                logger.error("Unexpected error getting lease: %s", err)
                raise
            to_create = self.new_lease(node, None)
            if not to_create["metadata"].get("ownerReferences"):
                return None, False
            lease = await self._client.create(to_create)
            logger.debug("Successfully created lease")
            return lease, True
        logger.debug("Successfully recovered existing lease")
        return lease, False

    async def retry_update_lease(self, node: dict, base: dict | None) -> None:
        """Update the lease, retrying up to MAX_UPDATE_RETRIES times."""
        for attempt in range(MAX_UPDATE_RETRIES):
            try:
                lease = await self._client.update(self.new_lease(node, base))
            except Exception as err:  # noqa: BLE001
                logger.error("failed to update node lease: %s", err)
                if isinstance(err, TimeoutError):
                    raise RuntimeError(
                        f"failed after {MAX_UPDATE_RETRIES} attempts to update node lease: {err}"
                    ) from err
                if is_conflict(err):
                    base, _ = await self.backoff_ensure_lease(node)
                continue
            logger.debug("Successfully updated lease after %d retries", attempt)
            self.latest_lease = lease
            return
        raise RuntimeError(f"failed after {MAX_UPDATE_RETRIES} attempts to update node lease")

    def new_lease(self, node: dict, base: dict | None) -> dict:
        """Build a new lease, or a copy of base, with renew time and owner set."""
        meta = node.get("metadata", {})
        name = meta.get("name", "")
        if base is None:
            lease = {
                "metadata": {"name": name, "namespace": NAMESPACE_NODE_LEASE},
                "spec": {
                    "holderIdentity": name,
                    "leaseDurationSeconds": self.lease_duration_seconds,
                },
            }
        else:
            lease = copy.deepcopy(base)
            lease.setdefault("metadata", {})
            lease.setdefault("spec", {})
        lease["spec"]["renewTime"] = _micro_time(self._clock.now())

        if not lease["metadata"].get("ownerReferences"):
            lease["metadata"]["ownerReferences"] = [
                {"apiVersion": "v1", "kind": "Node", "name": name, "uid": meta.get("uid", "")}
            ]
        logger.debug("Generated lease %s", lease)
        return lease