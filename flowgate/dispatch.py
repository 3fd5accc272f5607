"""Action dispatchers: the seam between the engine and agents/services."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple

import httpx

from .contracts import Step
from .errors import DispatchError, IncompleteOutputError

logger = logging.getLogger(__name__)

Handler = Callable[..., Awaitable[Dict[str, Any]]]


class ActionDispatcher(Protocol):
    """Invokes an external action and returns its outputs."""

    async def dispatch(
        self,
        agent: str,
        service: str,
        action: str,
        params: Dict[str, Any],
        *,
        context: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Run ``service.action`` on behalf of ``agent``.

        Raises:
            DispatchError: The action failed; ``retryable`` tells the engine
                whether another attempt makes sense.
        """


def select_outputs(step: Step, outputs: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Keep the outputs ``step`` declares, dropping any extra keys."""
    outputs = outputs or {}
    missing = [name for name in step.outputs if name not in outputs]
    if missing:
        raise IncompleteOutputError(step.id, missing)
    return {name: outputs[name] for name in step.outputs}


class LocalDispatcher:
    """Dispatch to async handlers registered in-process.

    Handlers are keyed by ``(service, action)`` and are called as
    ``handler(params, context=..., agent=...)``::

        dispatcher = LocalDispatcher()

        @dispatcher.action("grid-resilience", "detectOutages")
        async def detect(params, **_):
            return {"outageData": {...}}
    """

    def __init__(self) -> None:
        self._handlers: Dict[Tuple[str, str], Handler] = {}

    def register(self, service: str, action: str, handler: Handler) -> None:
        self._handlers[(service, action)] = handler

    def action(self, service: str, action: str) -> Callable[[Handler], Handler]:
        def decorator(func: Handler) -> Handler:
            self.register(service, action, func)
            return func

        return decorator

    def has_action(self, service: str, action: str) -> bool:
        return (service, action) in self._handlers

    async def dispatch(
        self,
        agent: str,
        service: str,
        action: str,
        params: Dict[str, Any],
        *,
        context: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        handler = self._handlers.get((service, action))
        if handler is None:
            raise DispatchError(
                f"No handler registered for {service}.{action}", retryable=False
            )
        logger.debug(f"Dispatching {service}.{action} for agent {agent} ({idempotency_key})")
        result = await handler(params, context=context or {}, agent=agent)
        return dict(result or {})


class HttpDispatcher:
    """Dispatch actions to a remote agent gateway over HTTP.

    Each call is ``POST {base_url}/{service}/{action}`` with a JSON body of
    ``{"agent", "parameters", "context"}``. The response body must be a JSON
    object whose ``outputs`` member (or the whole object) holds the outputs.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def dispatch(
        self,
        agent: str,
        service: str,
        action: str,
        params: Dict[str, Any],
        *,
        context: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}/{service}/{action}"
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
        body = {"agent": agent, "parameters": params, "context": context or {}}
        try:
            response = await self._client.post(url, json=body, headers=headers)
        except httpx.TransportError as exc:
            raise DispatchError(f"{service}.{action} unreachable: {exc}") from exc

        if response.status_code >= 500:
            raise DispatchError(
                f"{service}.{action} failed with HTTP {response.status_code}"
            )
        if response.status_code >= 400:
            raise DispatchError(
                f"{service}.{action} rejected with HTTP {response.status_code}: "
                f"{response.text[:200]}",
                retryable=False,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise DispatchError(
                f"{service}.{action} returned invalid JSON", retryable=False
            ) from exc
        if not isinstance(data, dict):
            raise DispatchError(
                f"{service}.{action} returned {type(data).__name__}, expected object",
                retryable=False,
            )
        outputs = data.get("outputs", data)
        return outputs if isinstance(outputs, dict) else {}


__all__ = ["ActionDispatcher", "LocalDispatcher", "HttpDispatcher", "select_outputs"]
