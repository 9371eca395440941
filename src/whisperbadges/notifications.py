"""Notification bridge: hand domain events to the delivery service."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import requests

from whisperbadges import config

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised when the notification service rejects an event."""


class NotificationBridge(Protocol):
    def notify(self, event: dict[str, Any]) -> None: ...


def push_alert(event: dict[str, Any]) -> str:
    """Build the one-line alert text shown for *event*."""
    metadata: dict[str, Any] = event.get("metadata") or {}
    story_title = metadata.get("story_title") or "your story"
    display_name = metadata.get("display_name") or "A reader"
    event_type = event.get("event_type")

    if event_type == "badge_earned":
        badge_name = metadata.get("badge_name", "")
        if metadata.get("story_title"):
            return f"Your story {story_title} earned the {badge_name} badge"
        return f"You earned the {badge_name} badge"
    if event_type == "resonance_left":
        return f"A reader left a Resonance on {story_title}: {metadata.get('word', '')}"
    if event_type == "book_gifted":
        return f"{display_name} gifted {story_title} to someone new"
    if event_type == "book_claimed":
        return f"Someone started reading {story_title}"
    return f"New activity on {story_title}"


class WebhookBridge:
    """POSTs events as JSON to the notification service."""

    def __init__(self, url: str, timeout: float = 10.0) -> None:
        if not url:
            raise ValueError("NOTIFY_WEBHOOK_URL is required but was empty.")
        self._url = url
        self._timeout = timeout
        self._session = requests.Session()
        self._session.headers.update({"Content-Type": "application/json"})

    def notify(self, event: dict[str, Any]) -> None:
        payload = {**event, "alert": push_alert(event)}
        resp = self._session.post(self._url, json=payload, timeout=self._timeout)
        if not 200 <= resp.status_code < 300:
            raise NotificationError(
                f"Notification service returned {resp.status_code}: {resp.text[:500]}"
            )
        logger.debug("Delivered %s to %s", event.get("event_type"), self._url)


class LoggingBridge:
    """Fallback when no webhook is configured: log instead of delivering."""

    def notify(self, event: dict[str, Any]) -> None:
        logger.info("[notify] %s", push_alert(event))


def build_bridge() -> NotificationBridge:
    if config.notifications_enabled():
        return WebhookBridge(config.NOTIFY_WEBHOOK_URL, timeout=config.NOTIFY_TIMEOUT)
    logger.info("NOTIFY_WEBHOOK_URL not set; notifications will only be logged.")
    return LoggingBridge()
