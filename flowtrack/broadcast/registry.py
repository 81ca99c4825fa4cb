"""Per-partition ownership of broadcast hubs."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Optional

from ..query import QueryAggregator
from .hub import BroadcastHub

logger = logging.getLogger(__name__)


class HubRegistry:
    """Create, look up and tear down one ``BroadcastHub`` per partition.

    Hubs with no observers are torn down by ``prune_idle`` once they have
    been idle for ``idle_timeout`` seconds.
    """

    def __init__(
        self,
        aggregator: QueryAggregator,
        send_timeout: float = 5.0,
        idle_timeout: float = 300.0,
    ) -> None:
        self._aggregator = aggregator
        self._send_timeout = send_timeout
        self._idle_timeout = idle_timeout
        self._hubs: Dict[str, BroadcastHub] = {}

    def get(self, partition: str) -> BroadcastHub:
        hub = self._hubs.get(partition)
        if hub is None or hub.closed:
            hub = BroadcastHub(partition, self._aggregator, self._send_timeout)
            self._hubs[partition] = hub
        return hub

    def partitions(self) -> list[str]:
        return list(self._hubs)

    async def broadcast(self, partition: str, event: Any) -> int:
        """Fan out to an existing hub; a partition without one has no observers."""
        hub = self._hubs.get(partition)
        if hub is None:
            return 0
        return await hub.broadcast(event)

    async def destroy(self, partition: str) -> None:
        hub = self._hubs.pop(partition, None)
        if hub is not None:
            await hub.close()

    async def prune_idle(self, now: Optional[float] = None) -> list[str]:
        now = time.monotonic() if now is None else now
        idle = [
            partition
            for partition, hub in self._hubs.items()
            if hub.observer_count == 0 and now - hub.last_activity >= self._idle_timeout
        ]
        for partition in idle:
            await self.destroy(partition)
        if idle:
            logger.debug(f"Tore down idle hubs: {', '.join(idle)}")
        return idle

    async def prune_forever(self, interval: float) -> None:
        """Run ``prune_idle`` every ``interval`` seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            try:
                await self.prune_idle()
            except Exception:
                logger.exception("Pruning idle hubs failed")

    async def close(self) -> None:
        for partition in list(self._hubs):
            await self.destroy(partition)
