"""Periodic pinging of a node provider, with at most one ping in flight."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PingResult:
    """Outcome of the latest ping: when it started, and the error it produced, if any."""

    time: datetime | None
    error: BaseException | None = None


class NodePingController:
    """Pings a provider on an interval and keeps the latest result available."""

    def __init__(self, provider, ping_interval: float, ping_timeout: float | None = None):
        if not ping_interval:
            raise ValueError("Node ping interval is 0")
        if ping_timeout is not None and ping_timeout == 0:
            raise ValueError("Node ping timeout is 0")
        self._provider = provider
        self._ping_interval = ping_interval
        self._ping_timeout = ping_timeout
        self._result: PingResult | None = None
        self._has_result = asyncio.Event()
        self._inflight: asyncio.Task | None = None

    async def run(self) -> None:
        """Ping until cancelled."""
        try:
            while True:
                await self._check()
                await asyncio.sleep(self._ping_interval)
        finally:
            if self._inflight is not None and not self._inflight.done():
                self._inflight.cancel()

    async def _ping(self) -> tuple[datetime, BaseException | None]:
        started = datetime.now(timezone.utc)
        try:
            await self._provider.ping()
        except Exception as err:  # noqa: BLE001 - the error is the ping's result
            return started, err
        return started, None

    async def _check(self) -> None:
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.create_task(self._ping())
        task = self._inflight
        done, _ = await asyncio.wait({task}, timeout=self._ping_timeout)
        if task in done:
            if task.cancelled():
                result = PingResult(None, asyncio.CancelledError())
            else:
                started, error = task.result()
                result = PingResult(started, error)
        else:
            error = TimeoutError("node ping timed out")
            logger.warning("Failed to ping node: %s", error)
            result = PingResult(None, error)
        self._result = result
        self._has_result.set()

    async def get_result(self) -> PingResult:
        """Return the latest result, waiting only for the very first ping to finish."""
        await self._has_result.wait()
        assert self._result is not None
        return self._result