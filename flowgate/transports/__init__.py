"""Event bus backends and the factory that picks one from configuration."""

from __future__ import annotations

import os
from typing import Callable, Dict, Optional

from ..config import FlowgateConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport


def _inmemory(config: FlowgateConfig) -> BaseTransport:
    return InMemoryTransport()


def _redis(config: FlowgateConfig) -> BaseTransport:
    from .redis import RedisTransport

    redis_conf = config.transport.redis
    return RedisTransport(
        host=redis_conf.host,
        port=redis_conf.port,
        db=redis_conf.db,
        password=redis_conf.password,
    )


def _rabbitmq(config: FlowgateConfig) -> BaseTransport:
    from .rabbitmq import RabbitMQTransport

    return RabbitMQTransport(url=config.transport.rabbitmq.url)


# broker client libraries are imported only when their backend is chosen
_BUILDERS: Dict[str, Callable[[FlowgateConfig], BaseTransport]] = {
    "inmemory": _inmemory,
    "redis": _redis,
    "rabbitmq": _rabbitmq,
}


def resolve_backend(
    backend: Optional[str] = None, config: Optional[FlowgateConfig] = None
) -> str:
    """Name of the backend to use.

    An explicit ``backend`` wins over ``FLOWGATE_TRANSPORT``, which wins over
    ``transport.backend`` in the config.

    Raises:
        ValueError: If the name is not a known backend.
    """
    config = config or load_config()
    name = (
        backend or os.getenv("FLOWGATE_TRANSPORT") or config.transport.backend
    ).strip().lower()
    if name not in _BUILDERS:
        raise ValueError(
            f"Unsupported transport backend: {name} "
            f"(expected one of {', '.join(sorted(_BUILDERS))})"
        )
    return name


def get_transport(
    backend: Optional[str] = None, config: Optional[FlowgateConfig] = None
) -> BaseTransport:
    """Build the event bus transport selected by :func:`resolve_backend`."""
    config = config or load_config()
    return _BUILDERS[resolve_backend(backend, config)](config)


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport", "resolve_backend"]
