"""Contract every event bus backend implements.

The engine talks to three kinds of topic through a transport: named events
(``grid.alarm``), metric samples (``metric:<name>``) and approval decisions
(``flowgate.approvals``). Backends only move :class:`BusMessage` envelopes;
they know nothing about triggers or runs.
"""

from __future__ import annotations

import abc
from typing import Any, AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import BusMessage

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """A broker connection carrying bus messages between flowgate processes.

    ``RawMessageT`` is whatever the backend needs to acknowledge a delivery
    (a Redis payload, an AMQP message). ``shared`` is ``False`` for backends
    whose messages never leave the current process, so a CLI publishing an
    approval can tell that no engine will ever receive it.
    """

    name: str = "base"
    shared: bool = True

    async def connect(self) -> None:
        """Open the broker connection; backends without one do nothing."""

    async def disconnect(self) -> None:
        """Close the broker connection."""

    async def __aenter__(self) -> "BaseTransport[RawMessageT]":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()

    @abc.abstractmethod
    async def publish(self, topic: str, message: BusMessage) -> None:
        """Deliver ``message`` to every future reader of ``topic``."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, BusMessage]]:
        """Yield ``(raw, message)`` pairs from ``topic``.

        Iteration ends after ``lifespan`` seconds, or never when it is
        ``None``. Callers ack each raw message once it is handled.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Mark a delivery as handled."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Reject a delivery. Backends without redelivery just ack it."""
        await self.ack(raw_message)
