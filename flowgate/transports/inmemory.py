"""In-memory transport for tests and single-process engines."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..contracts import BusMessage
from .base import BaseTransport


class InMemoryTransport(BaseTransport[Tuple[str, BusMessage]]):
    """One in-process queue per topic.

    Messages never leave the process, so only an engine in the same process
    can read them.
    """

    name = "inmemory"
    shared = False

    def __init__(self, poll_interval: float = 0.01) -> None:
        self._queues: Dict[str, Deque[Tuple[str, BusMessage]]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self.poll_interval = poll_interval

    async def publish(self, topic: str, message: BusMessage) -> None:
        """Publish message to in-memory queue."""
        raw = (message.to_json(), message)
        async with self._lock:
            self._queues[topic].append(raw)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, BusMessage], BusMessage]]:
        """Subscribe to messages from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            raw_message = None
            async with self._lock:
                if self._queues[topic]:
                    raw_message = self._queues[topic].popleft()
            if raw_message is not None:
                yield raw_message, raw_message[1]
                continue

            await asyncio.sleep(self.poll_interval)

    async def ack(self, raw_message: Tuple[str, BusMessage]) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass
