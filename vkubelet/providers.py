"""Node providers: the source of node health and node status updates."""

from __future__ import annotations

import abc
import asyncio
from collections.abc import Callable


async def _raise_if_cancelled() -> None:
    """Yield to the event loop so a pending cancellation surfaces here."""
    await asyncio.sleep(0)


class NodeProvider(abc.ABC):
    """Registers a node's health and reports changes to its status."""

    @abc.abstractmethod
    async def ping(self) -> None:
        """Check that the node is still active; raise if it is not."""

    @abc.abstractmethod
    def notify_node_status(self, callback: Callable[[dict], None]) -> None:
        """Arrange for callback to be called with the node whenever its status changes.

        Must not block the caller.
        """


class NaiveNodeProvider(NodeProvider):
    """A provider that is always healthy and never reports status changes."""

    async def ping(self) -> None:
        """Succeed unless the calling task has been cancelled."""
        await _raise_if_cancelled()

    def notify_node_status(self, callback: Callable[[dict], None]) -> None:
        return None


class NaiveNodeProviderV2(NodeProvider):
    """Like NaiveNodeProvider, but lets the caller push node status updates."""

    def __init__(self):
        self._notify: Callable[[dict], None] | None = None
        self._update_ready = asyncio.Event()

    async def ping(self) -> None:
        """Succeed unless the calling task has been cancelled."""
        await _raise_if_cancelled()

    def notify_node_status(self, callback: Callable[[dict], None]) -> None:
        self._notify = callback
        self._update_ready.set()

    async def update_status(self, node: dict) -> None:
        """Send a node status update, waiting until a callback has been registered."""
        await self._update_ready.wait()
        assert self._notify is not None
        self._notify(node)