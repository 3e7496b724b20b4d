from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Callable, Optional, Sequence

from .metrics import SSE_SUBSCRIBERS


LOGGER = logging.getLogger("tgrelay.events")

SESSIONS_EVENT = "sessions"
SUBSCRIBER_QUEUE_SIZE = 16

Snapshot = Sequence[dict[str, Any]]


def format_sse(event: str, data: Any) -> str:
    payload = json.dumps(data, separators=(",", ":"), ensure_ascii=False)
    return f"event: {event}\ndata: {payload}\n\n"


class StatusBroker:
    """Fan a full sessions snapshot out to every subscribed stream."""

    def __init__(self, *, queue_size: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscribers: set[asyncio.Queue[Optional[list[dict[str, Any]]]]] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue[Optional[list[dict[str, Any]]]]:
        queue: asyncio.Queue[Optional[list[dict[str, Any]]]] = asyncio.Queue(
            maxsize=self._queue_size
        )
        self._subscribers.add(queue)
        SSE_SUBSCRIBERS.set(len(self._subscribers))
        LOGGER.debug("event=sse_subscribe subscribers=%s", len(self._subscribers))
        return queue

    def unsubscribe(self, queue: asyncio.Queue[Optional[list[dict[str, Any]]]]) -> None:
        self._subscribers.discard(queue)
        SSE_SUBSCRIBERS.set(len(self._subscribers))
        LOGGER.debug("event=sse_unsubscribe subscribers=%s", len(self._subscribers))

    @staticmethod
    def _offer(queue: asyncio.Queue[Optional[list[dict[str, Any]]]], item: Optional[list[dict[str, Any]]]) -> None:
        while True:
            try:
                queue.put_nowait(item)
                return
            except asyncio.QueueFull:
                # items are full snapshots; drop the oldest
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass

    def publish(self, sessions: Snapshot) -> None:
        snapshot = [dict(item) for item in sessions]
        for queue in list(self._subscribers):
            self._offer(queue, snapshot)

    def close(self) -> None:
        for queue in list(self._subscribers):
            self._offer(queue, None)

    async def stream(
        self,
        initial: Callable[[], Snapshot],
        *,
        keepalive: float,
        is_disconnected: Optional[Callable[[], Any]] = None,
    ) -> AsyncIterator[str]:
        """Yield SSE frames: the current snapshot first, then every change."""

        queue = self.subscribe()
        try:
            yield format_sse(SESSIONS_EVENT, list(initial()))
            while True:
                if is_disconnected is not None and await is_disconnected():
                    LOGGER.debug("event=sse_client_gone")
                    break
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=keepalive)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                if item is None:
                    break
                yield format_sse(SESSIONS_EVENT, item)
        finally:
            self.unsubscribe(queue)


__all__ = ["SESSIONS_EVENT", "StatusBroker", "format_sse"]
