"""Event bus facade over a transport: named events and metric streams."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional

from .constants import METRIC_TOPIC_PREFIX
from .contracts import BusMessage, utcnow
from .transports import BaseTransport

logger = logging.getLogger(__name__)


def metric_topic(name: str) -> str:
    return f"{METRIC_TOPIC_PREFIX}{name}"


class EventBus:
    """Publishes and consumes :class:`BusMessage` envelopes.

    ``subscribe`` yields events published under a topic and
    ``subscribe_metric`` yields samples of one metric. Messages are
    acknowledged once the consumer resumes the iterator.
    """

    def __init__(self, transport: BaseTransport) -> None:
        self.transport = transport

    async def publish_event(
        self, topic: str, payload: Optional[Dict[str, Any]] = None, kind: str = "event"
    ) -> BusMessage:
        message = BusMessage(kind=kind, name=topic, payload=payload or {})
        await self.transport.publish(topic, message)
        return message

    async def publish_sample(
        self, metric: str, value: float, timestamp: Optional[datetime] = None
    ) -> BusMessage:
        message = BusMessage(
            kind="metric", name=metric, value=value, timestamp=timestamp or utcnow()
        )
        await self.transport.publish(metric_topic(metric), message)
        return message

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[BusMessage]:
        async for raw, message in self.transport.subscribe(topic, lifespan=lifespan):
            try:
                yield message
            finally:
                await self.transport.ack(raw)

    async def subscribe_metric(
        self, name: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[BusMessage]:
        async for message in self.subscribe(metric_topic(name), lifespan=lifespan):
            if message.value is None:
                logger.warning(f"Ignoring sample without value on metric {name}")
                continue
            yield message


__all__ = ["EventBus", "metric_topic"]
