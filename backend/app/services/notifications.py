"""User-facing notification delivery used by the reconciliation engine."""

from __future__ import annotations

from typing import Protocol

import httpx
from loguru import logger

from app.core.config import Settings, get_settings


class Notifier(Protocol):
    async def notify(self, user_address: str, title: str, body: str) -> None: ...


class LogNotifier:
    """Record notifications in the job log; used when no webhook is configured."""

    async def notify(self, user_address: str, title: str, body: str) -> None:
        logger.info("Notify {}: {} - {}", user_address, title, body)


class WebhookNotifier:
    """POST notifications to the configured messaging endpoint.

    Delivery is best effort. Failures are logged and never reach the caller,
    since a missed message must not affect ledger or cache state.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def notify(self, user_address: str, title: str, body: str) -> None:
        payload = {"userAddress": user_address, "title": title, "body": body}
        try:
            response = await self.client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Notification to {} failed: {}", user_address, exc)

    async def aclose(self) -> None:
        await self.client.aclose()


def build_notifier(settings: Settings | None = None) -> Notifier:
    settings = settings or get_settings()
    if settings.notification_webhook_url:
        return WebhookNotifier(str(settings.notification_webhook_url))
    return LogNotifier()


__all__ = ["LogNotifier", "Notifier", "WebhookNotifier", "build_notifier"]
