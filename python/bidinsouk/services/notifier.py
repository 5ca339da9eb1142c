"""Notification delivery adapters.

Implements NotificationPort:
- LoggingNotifier: writes events to the log
- WebhookNotifier: POSTs events as JSON to an HTTP endpoint
- BroadcastNotifier: fans one event out to several notifiers
"""

import logging
from typing import List, Optional

import aiohttp

from ..config import NotificationConfig
from ..models.types import NotificationEvent
from .ports import NotificationPort

logger = logging.getLogger(__name__)


class LoggingNotifier:
    """Notifier that only logs events."""

    def __init__(self, level: int = logging.INFO):
        self.level = level
        self.events_logged = 0

    async def notify(self, event: NotificationEvent) -> None:
        self.events_logged += 1
        logger.log(
            self.level,
            f"[{event.event_type.name}] auction={event.auction_id} "
            f"recipients={','.join(event.recipients) or '-'} payload={event.payload}",
        )


class WebhookNotifier:
    """Delivers events to a webhook URL."""

    def __init__(self, config: NotificationConfig):
        if not config.webhook_url:
            raise ValueError("webhook_url is required for WebhookNotifier")
        self.url = config.webhook_url
        self.timeout = aiohttp.ClientTimeout(total=config.timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

    async def start(self) -> None:
        """Open the HTTP session."""
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        logger.info(f"Webhook notifier started ({self.url})")

    async def stop(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def notify(self, event: NotificationEvent) -> None:
        if not self._session:
            raise RuntimeError("Webhook notifier not started")

        async with self._session.post(self.url, json=event.to_dict()) as resp:
            if resp.status >= 400:
                body = await resp.text()
                raise RuntimeError(f"Webhook returned {resp.status}: {body[:200]}")


class BroadcastNotifier:
    """Sends each event to every registered notifier.

    A failing notifier does not stop delivery to the others.
    """

    def __init__(self, notifiers: Optional[List[NotificationPort]] = None):
        self.notifiers: List[NotificationPort] = list(notifiers or [])

    def add(self, notifier: NotificationPort) -> None:
        self.notifiers.append(notifier)

    async def notify(self, event: NotificationEvent) -> None:
        for notifier in self.notifiers:
            try:
                await notifier.notify(event)
            except Exception as e:
                logger.warning(
                    f"{type(notifier).__name__} failed on {event.event_type.name} "
                    f"for {event.auction_id}: {e}"
                )


def create_notifier(config: NotificationConfig) -> BroadcastNotifier:
    """Build the notifier chain described by config.

    Returned notifiers with a start()/stop() lifecycle must be started by
    the caller; see lifecycle_members().
    """
    broadcast = BroadcastNotifier()
    if config.log_events:
        broadcast.add(LoggingNotifier())
    if config.webhook_url:
        broadcast.add(WebhookNotifier(config))
    return broadcast


def lifecycle_members(broadcast: BroadcastNotifier) -> List[WebhookNotifier]:
    """Notifiers in the chain that hold an HTTP session."""
    return [n for n in broadcast.notifiers if isinstance(n, WebhookNotifier)]
