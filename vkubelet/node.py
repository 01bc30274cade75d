"""Controller that registers a node and keeps its status current in the API server."""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timezone

from vkubelet.errdefs import is_conflict, is_not_found
from vkubelet.lease import (
    DEFAULT_LEASE_DURATION,
    DEFAULT_RENEW_INTERVAL_FRACTION,
    LeaseController,
    RealClock,
)
from vkubelet.patch import prepare_three_way_patch
from vkubelet.ping import NodePingController

logger = logging.getLogger(__name__)

DEFAULT_PING_INTERVAL = 10.0
DEFAULT_STATUS_UPDATE_INTERVAL = 60.0

_RETRY_STEPS = 5
_RETRY_DELAY = 0.01

ErrorHandler = Callable[[BaseException], Awaitable[None]]


def _now_rfc3339() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def taints_string(taints: Iterable[dict] | None) -> str:
    """Render taints as ``key=value:effect`` entries separated by commas."""
    return ", ".join(
        f"{taint.get('key', '')}={taint.get('value', '')}:{taint.get('effect', '')}" for taint in taints or ()
    )


def update_node_status_heartbeat(node: dict) -> None:
    """Set the heartbeat time of every condition of the node to now."""
    now = _now_rfc3339()
    for condition in (node.get("status") or {}).get("conditions") or ():
        condition["lastHeartbeatTime"] = now


async def update_node_status(nodes, node: dict) -> dict:
    """Patch the status of the node in the API server to match node; return the stored node.

    ``nodes`` must offer awaitable ``get(name)`` and ``patch_status(name, patch)``.
    Conflicting writes are retried a few times.
    """
    name = node["metadata"]["name"]
    for attempt in range(_RETRY_STEPS):
        try:
            current = await nodes.get(name)
            try:
                patch = prepare_three_way_patch(node, current)
            except ValueError as err:
                raise ValueError(f"Cannot generate patch: {err}") from err
            meta = current.get("metadata") or {}
            logger.debug(
                "Generated three way patch for node %s (uid %s, taints %s): %s",
                meta.get("name"),
                meta.get("uid"),
                taints_string((current.get("spec") or {}).get("taints")),
                patch,
            )
            updated = await nodes.patch_status(name, patch)
        except Exception as err:
            if not is_conflict(err) or attempt == _RETRY_STEPS - 1:
                raise
            await asyncio.sleep(_RETRY_DELAY)
            continue
        logger.debug(
            "updated node status in api server (resourceVersion %s)",
            (updated.get("metadata") or {}).get("resourceVersion"),
        )
        return updated
    raise AssertionError("unreachable")


class NodeController:
    """Registers a single node and periodically updates its status.

    ``nodes`` must offer awaitable ``get(name)``, ``create(node)`` and
    ``patch_status(name, patch)``. When ``lease_client`` is given, node leases
    are renewed and the full status is only pushed every ``status_interval``;
    otherwise the status is pushed on every ``ping_interval``.
    """

    def __init__(
        self,
        provider,
        node: dict,
        nodes,
        ping_interval: float | None = None,
        status_interval: float | None = None,
        ping_timeout: float | None = None,
        lease_client=None,
        lease_duration_seconds: int | None = None,
        lease_renew_interval: float | None = None,
        status_update_error_handler: ErrorHandler | None = None,
    ):
        self._provider = provider
        self._server_node: dict | None = copy.deepcopy(node)
        self._nodes = nodes
        self._ping_interval = ping_interval or DEFAULT_PING_INTERVAL
        self._status_interval = status_interval or DEFAULT_STATUS_UPDATE_INTERVAL
        self._error_handler = status_update_error_handler
        self._lease_controller: LeaseController | None = None
        if lease_client is not None:
            duration = lease_duration_seconds or DEFAULT_LEASE_DURATION
            if lease_renew_interval is None:
                lease_renew_interval = float(int(duration * DEFAULT_RENEW_INTERVAL_FRACTION))
            try:
                self._lease_controller = LeaseController(
                    RealClock(), lease_client, duration, lease_renew_interval, self
                )
            except ValueError as err:
                raise ValueError(f"error applying node option: unable to configure lease controller: {err}") from err
        self.ping_controller = NodePingController(provider, self._ping_interval, ping_timeout)
        self._status_updates: asyncio.Queue[dict] = asyncio.Queue()
        self._ready = asyncio.Event()
        self._done = asyncio.Event()
        self._error: BaseException | None = None

    def _on_status(self, node: dict) -> None:
        self._status_updates.put_nowait(copy.deepcopy(node))

    async def run(self) -> None:
        """Register the node and keep its status updated until cancelled.

        Raises the error that stopped the controller, if any.
        """
        tasks: list[asyncio.Task] = []
        try:
            self._provider.notify_node_status(self._on_status)
            tasks.append(asyncio.create_task(self.ping_controller.run()))
            provider_node = copy.deepcopy(self._server_node)
            await self._ensure_node(provider_node)
            if self._lease_controller is not None:
                logger.debug("Starting lease controller")
                tasks.append(asyncio.create_task(self._lease_controller.run()))
            await self._control_loop(provider_node)
        except asyncio.CancelledError:
            raise
        except Exception as err:
            self._error = err
            raise
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._done.set()

    async def wait_ready(self) -> None:
        """Wait until the control loop has started; raise if the controller exits first."""
        ready = asyncio.ensure_future(self._ready.wait())
        done = asyncio.ensure_future(self._done.wait())
        try:
            await asyncio.wait({ready, done}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            ready.cancel()
            done.cancel()
        if not self._ready.is_set():
            raise RuntimeError(f"controller exited before ready: {self._error}") from self._error

    async def wait_done(self) -> BaseException | None:
        """Wait until the controller has exited and return the error that stopped it, if any."""
        await self._done.wait()
        return self._error

    def get_server_node(self) -> dict:
        """Return a copy of the node as last stored in the API server."""
        if self._server_node is None:
            raise RuntimeError("Server node does not yet exist")
        return copy.deepcopy(self._server_node)

    async def _ensure_node(self, provider_node: dict) -> None:
        try:
            await self._update_status(provider_node, skip_error_cb=True)
            return
        except Exception as err:
            if not is_not_found(err):
                raise
        try:
            node = await self._nodes.create(copy.deepcopy(self._server_node))
        except Exception as err:
            raise RuntimeError(f"error registering node with kubernetes: {err}") from err
        self._server_node = node
        meta = provider_node.setdefault("metadata", {})
        created_meta = node.get("metadata") or {}
        for field in ("name", "namespace", "uid"):
            if field in created_meta:
                meta[field] = created_meta[field]

    async def _control_loop(self, provider_node: dict) -> None:
        if self._lease_controller is None:
            logger.debug("lease controller is not enabled, updating node status at ping interval")
            sleep_interval = self._ping_interval
        else:
            logger.debug("lease controller in use, updating at status interval")
            sleep_interval = self._status_interval

        self._ready.set()
        while True:
            try:
                updated = await asyncio.wait_for(self._status_updates.get(), timeout=sleep_interval)
            except asyncio.TimeoutError:
                updated = None
            if updated is not None:
                logger.debug("Received node status update")
                updated_meta = updated.get("metadata") or {}
                meta = provider_node.setdefault("metadata", {})
                provider_node["status"] = updated.get("status") or {}
                meta["annotations"] = updated_meta.get("annotations")
                meta["labels"] = updated_meta.get("labels")
            try:
                await self._update_status(provider_node, skip_error_cb=False)
            except Exception as err:  # noqa: BLE001 - the loop keeps going on failed updates
                logger.error("Error handling node status update: %s", err)

    async def _update_status(self, provider_node: dict, skip_error_cb: bool) -> None:
        result = await self.ping_controller.get_result()
        if result.error is not None:
            raise RuntimeError(
                f"not updating node status because node ping failed: {result.error}"
            ) from result.error

        update_node_status_heartbeat(provider_node)
        try:
            node = await update_node_status(self._nodes, provider_node)
        except Exception as err:
            if skip_error_cb or self._error_handler is None:
                raise
            await self._error_handler(err)
            node = await update_node_status(self._nodes, provider_node)
        self._server_node = node