"""Notification seam used when a step exhausts its retries."""

from __future__ import annotations

import logging
from datetime import datetime
from collections import deque
from typing import Deque, Dict, List, Optional, Protocol

import httpx
from pydantic import BaseModel, Field

from .contracts import utcnow
from .errors import ErrorKind

logger = logging.getLogger(__name__)


class NotificationPayload(BaseModel):
    """Describes a failed step for the people who need to act on it."""

    run_id: str
    workflow_id: str
    use_case_id: str
    step_id: str
    step_name: str
    attempts: int
    error: str
    error_kind: Optional[ErrorKind] = None
    occurred_at: datetime = Field(default_factory=utcnow)

    @property
    def subject(self) -> str:
        return f"[flowgate] {self.use_case_id}: step {self.step_id} failed"


class Notifier(Protocol):
    async def notify(
        self, recipients: List[str], channels: List[str], payload: NotificationPayload
    ) -> None:
        """Deliver ``payload`` to every recipient on every channel."""


class LoggingNotifier:
    """Writes notifications to the log. Used when no transport is configured.

    The last ``keep`` payloads are kept in ``sent`` for inspection.
    """

    def __init__(self, keep: int = 100) -> None:
        self.sent: Deque[NotificationPayload] = deque(maxlen=keep)

    async def notify(
        self, recipients: List[str], channels: List[str], payload: NotificationPayload
    ) -> None:
        self.sent.append(payload)
        logger.warning(
            f"{payload.subject} after {payload.attempts} attempt(s): {payload.error} "
            f"-> recipients={recipients} channels={channels}"
        )


class WebhookNotifier:
    """Posts notifications to one webhook URL per channel.

    Channels without a configured URL are skipped with a warning. A failing
    webhook does not prevent delivery on the remaining channels.
    """

    def __init__(
        self,
        webhooks: Dict[str, str],
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.webhooks = dict(webhooks)
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def notify(
        self, recipients: List[str], channels: List[str], payload: NotificationPayload
    ) -> None:
        body = {
            "subject": payload.subject,
            "recipients": recipients,
            "payload": payload.model_dump(mode="json"),
        }
        failures = []
        for channel in channels:
            url = self.webhooks.get(channel)
            if not url:
                logger.warning(f"No webhook configured for channel {channel}")
                continue
            try:
                response = await self._client.post(url, json={**body, "channel": channel})
                response.raise_for_status()
            except httpx.HTTPError as exc:
                logger.error(f"Notification on channel {channel} failed: {exc}")
                failures.append(channel)
        if failures:
            raise RuntimeError(f"Notification failed on channels: {', '.join(failures)}")


__all__ = ["NotificationPayload", "Notifier", "LoggingNotifier", "WebhookNotifier"]
