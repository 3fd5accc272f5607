"""Redis transport for cross-process messaging."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import BusMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[str]):
    """Redis-based transport using one list per topic."""

    name = "redis"

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "flowgate",
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[Any] = None

    def _queue_name(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, message: BusMessage) -> None:
        """Publish message to Redis list (acting as queue)."""
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self._queue_name(topic), message.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, BusMessage]]:
        """Subscribe to messages from Redis queue."""
        if not self._redis:
            await self.connect()

        queue_name = self._queue_name(topic)
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            result = await self._redis.brpop(queue_name, timeout=1)
            if not result:
                continue

            _, message_json = result
            try:
                message = BusMessage.from_json(message_json)
            except ValidationError as e:
                logger.error(f"Failed to parse message on {queue_name}: {e}")
                continue
            yield message_json, message

    async def ack(self, raw_message: str) -> None:
        """No-op acknowledgment for Redis transport (message already consumed)."""
        pass
