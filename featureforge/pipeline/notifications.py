"""Operator notifications.

The pipeline only needs a publish channel: CTA requests, phase failures and
completed runs are pushed to a Notifier. Responses come back through the API
(``POST /api/ctas/{cta_id}/respond``) as ``cta.responded`` events.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from featureforge.config import get_settings
from featureforge.schemas import CtaRequestEvent


logger = logging.getLogger(__name__)


class Notifier(ABC):
    """Publishes pipeline events to a human."""

    @abstractmethod
    async def cta_requested(self, event: CtaRequestEvent) -> None:
        ...

    @abstractmethod
    async def phase_failed(self, run_id: str, phase: str, message: str, detail: str = "") -> None:
        ...

    @abstractmethod
    async def run_completed(self, run_id: str, pr_url: str) -> None:
        ...

    async def on_event(self, name: str, data: dict[str, Any]) -> None:
        """Engine subscriber: forwards published CTA requests."""
        if name == "cta.requested":
            await self.cta_requested(CtaRequestEvent.model_validate(data))


class LogNotifier(Notifier):
    """Writes notifications to the log."""

    async def cta_requested(self, event: CtaRequestEvent) -> None:
        request = event.request
        text = getattr(request, "message", None) or getattr(request, "prompt", "")
        logger.info(f"[{event.run_id}] Human feedback requested ({request.kind}, {event.cta_id}): {text}")

    async def phase_failed(self, run_id: str, phase: str, message: str, detail: str = "") -> None:
        logger.error(f"[{run_id}] Phase {phase} failed: {message}")
        if detail:
            logger.error(f"[{run_id}] Last output:\n{detail}")

    async def run_completed(self, run_id: str, pr_url: str) -> None:
        logger.info(f"[{run_id}] Run completed: {pr_url}")


class WebhookNotifier(LogNotifier):
    """Logs and POSTs each notification as JSON to a webhook."""

    def __init__(self, url: str | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.url = url or get_settings().notification_webhook_url
        self._client = httpx.AsyncClient(timeout=10.0, transport=transport)

    async def _post(self, payload: dict[str, Any]) -> None:
        try:
            response = await self._client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            # The log line above already carries the notification
            logger.warning(f"Webhook notification failed: {e}")

    async def cta_requested(self, event: CtaRequestEvent) -> None:
        await super().cta_requested(event)
        await self._post({"type": "cta.requested", **event.model_dump(mode="json")})

    async def phase_failed(self, run_id: str, phase: str, message: str, detail: str = "") -> None:
        await super().phase_failed(run_id, phase, message, detail)
        await self._post({
            "type": "phase.failed",
            "run_id": run_id,
            "phase": phase,
            "message": message,
            "detail": detail,
        })

    async def run_completed(self, run_id: str, pr_url: str) -> None:
        await super().run_completed(run_id, pr_url)
        await self._post({"type": "run.completed", "run_id": run_id, "pr_url": pr_url})

    async def close(self) -> None:
        await self._client.aclose()


def create_notifier(webhook_url: str | None = None) -> Notifier:
    """WebhookNotifier when a URL is configured, LogNotifier otherwise."""
    url = webhook_url if webhook_url is not None else get_settings().notification_webhook_url
    if url:
        return WebhookNotifier(url)
    return LogNotifier()
