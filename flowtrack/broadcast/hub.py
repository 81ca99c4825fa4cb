"""Live fan-out of tracker updates to connected observers."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Protocol

from pydantic import ValidationError

from ..exceptions import TrackerError
from ..models import RunFilter, WorkflowRun
from ..query import QueryAggregator

logger = logging.getLogger(__name__)

INITIAL_DATA = "initial_data"
UPDATE = "update"
QUERY = "query"
QUERY_RESULT = "query_result"
ERROR = "error"


class Observer(Protocol):
    """A live sink, e.g. a WebSocket connection."""

    async def send_text(self, data: str) -> None: ...


def encode_message(message_type: str, data: Any) -> str:
    return json.dumps({"type": message_type, "data": data})


def _dump_runs(runs: list[WorkflowRun]) -> list[dict[str, Any]]:
    return [run.model_dump(mode="json") for run in runs]


class BroadcastHub:
    """The connected observers of one tracking partition.

    Delivery is best effort and at most once: a failed or slow send is
    logged, the observer is dropped, and nothing is retried. Observers
    that lose their hub must resubscribe for a fresh snapshot.
    """

    def __init__(
        self,
        partition: str,
        aggregator: QueryAggregator,
        send_timeout: float = 5.0,
    ) -> None:
        self.partition = partition
        self._aggregator = aggregator
        self._send_timeout = send_timeout
        self._observers: set[Observer] = set()
        # Observers still waiting for their snapshot, with updates held back.
        self._pending: dict[Observer, list[str]] = {}
        self._lock = asyncio.Lock()
        self._closed = False
        self.last_activity = time.monotonic()

    @property
    def observer_count(self) -> int:
        return len(self._observers) + len(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed

    def _touch(self) -> None:
        self.last_activity = time.monotonic()

    async def _deliver(self, observer: Observer, message: str) -> bool:
        try:
            await asyncio.wait_for(observer.send_text(message), self._send_timeout)
        except Exception as exc:
            logger.warning(
                f"Delivery to observer on partition {self.partition!r} failed: {exc!r}"
            )
            return False
        return True

    async def subscribe(self, observer: Observer) -> bool:
        """Register ``observer`` and send it a recent-activity snapshot.

        The observer joins the live set only after the snapshot, so it
        never sees an ``update`` before ``initial_data``. Returns ``False``
        when delivery fails; if the snapshot query raises, the error
        propagates. In both cases the observer is not kept.
        """
        if self._closed:
            raise TrackerError(f"Broadcast hub {self.partition!r} is closed")
        async with self._lock:
            self._pending[observer] = []
            self._touch()

        try:
            runs = await self._aggregator.list_runs(RunFilter())
        except Exception:
            await self.unsubscribe(observer)
            raise
        if not await self._deliver(observer, encode_message(INITIAL_DATA, _dump_runs(runs))):
            await self.unsubscribe(observer)
            return False

        # Flush updates published while the snapshot was in flight, then
        # move the observer into the live set.
        while True:
            async with self._lock:
                held = self._pending.get(observer)
                if held is None:
                    return False
                if not held:
                    del self._pending[observer]
                    self._observers.add(observer)
                    return True
                self._pending[observer] = []
            for message in held:
                if not await self._deliver(observer, message):
                    await self.unsubscribe(observer)
                    return False

    async def unsubscribe(self, observer: Observer) -> None:
        async with self._lock:
            self._observers.discard(observer)
            self._pending.pop(observer, None)
            self._touch()

    async def broadcast(self, event: Any) -> int:
        """Send an ``update`` carrying ``event`` to every observer.

        Observers still waiting for their snapshot get it afterwards.
        Returns the number of live observers that received it now.
        """
        if self._closed:
            return 0
        message = encode_message(UPDATE, event)
        async with self._lock:
            targets = list(self._observers)
            for held in self._pending.values():
                held.append(message)
            self._touch()

        results = await asyncio.gather(*(self._deliver(o, message) for o in targets))
        failed = [observer for observer, ok in zip(targets, results) if not ok]
        if failed:
            async with self._lock:
                self._observers.difference_update(failed)
            logger.info(
                f"Dropped {len(failed)} unreachable observer(s) from {self.partition!r}"
            )
        return len(targets) - len(failed)

    async def handle_message(self, observer: Observer, raw: str) -> None:
        """Answer a message sent by an observer over its live channel."""
        try:
            message = json.loads(raw)
            if not isinstance(message, dict) or message.get("type") != QUERY:
                return
            run_filter = RunFilter.model_validate(message.get("params") or {})
            runs = await self._aggregator.query(run_filter)
            reply = encode_message(QUERY_RESULT, _dump_runs(runs))
        except (json.JSONDecodeError, ValidationError, TrackerError) as exc:
            reply = json.dumps({"type": ERROR, "error": str(exc)})
        await self._deliver(observer, reply)

    async def close(self) -> None:
        """Drop every observer; the hub accepts no further subscriptions."""
        async with self._lock:
            dropped = self.observer_count
            self._observers.clear()
            self._pending.clear()
            self._closed = True
        if dropped:
            logger.info(f"Closed hub {self.partition!r}, dropped {dropped} observer(s)")
