"""Operator notifications. Fire-and-forget: ``notify`` never raises into the caller."""
from __future__ import annotations

import logging

import httpx

log = logging.getLogger(__name__)

_TIMEOUT = 10.0


class Notifier:
    async def notify(self, subject: str, body: str) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    """Used when no delivery channel is configured: the message goes to the log."""

    async def notify(self, subject: str, body: str) -> None:
        log.info("[notification] %s\n%s", subject, body)


class WebhookNotifier(Notifier):
    """POST ``{"subject", "body"}`` as JSON to a webhook (Slack/ntfy/e-mail relay)."""

    def __init__(self, url: str, timeout: float = _TIMEOUT):
        self.url = url
        self.timeout = timeout

    async def notify(self, subject: str, body: str) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.url, json={"subject": f"Organism: {subject}", "body": body})
                resp.raise_for_status()
        except Exception as exc:
            log.warning("Notification %r not delivered: %s", subject, exc)
            return
        log.info("Notification sent: %s", subject)


def make_notifier(webhook_url: str = "") -> Notifier:
    return WebhookNotifier(webhook_url) if webhook_url else LogNotifier()
