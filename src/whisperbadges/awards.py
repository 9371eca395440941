"""Award writer: persist a badge exactly once, then announce it."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from whisperbadges.catalog import get_definition
from whisperbadges.models import AwardedBadge, EventType, WhisperEvent
from whisperbadges.notifications import NotificationBridge
from whisperbadges.store import BadgeStore

logger = logging.getLogger(__name__)

DEFAULT_DISPLAY_NAME = "A Reader"


class AwardWriter:
    """Idempotent badge persistence.

    The store's unique index on (badge_type, user_id, story_id) decides which
    of several racing award attempts wins; losers get None back. Nothing here
    raises: write failures are logged and reported as "no new badge".
    """

    def __init__(self, store: BadgeStore, bridge: NotificationBridge) -> None:
        self._store = store
        self._bridge = bridge
        self._pending: set[asyncio.Task[None]] = set()

    async def award(
        self,
        badge_type: str,
        user_id: str,
        story_id: str | None = None,
        story_title: str | None = None,
    ) -> AwardedBadge | None:
        definition = get_definition(badge_type)
        if definition is None:
            logger.error("Unknown badge type: %s", badge_type)
            return None

        try:
            earned_at = await asyncio.to_thread(
                self._store.insert_earned_badge, str(definition.badge_type), user_id, story_id
            )
        except Exception:
            logger.exception("Failed to award %s badge to %s", badge_type, user_id)
            return None

        if earned_at is None:
            logger.debug("%s already held by %s (story=%s)", badge_type, user_id, story_id)
            return None

        display_name = await self._display_name(user_id)
        metadata: dict[str, Any] = {
            "badge_type": str(definition.badge_type),
            "badge_name": definition.display_name,
            "badge_tagline": definition.tagline,
            "story_title": story_title,
            "display_name": display_name,
        }

        try:
            await asyncio.to_thread(
                self._store.insert_event,
                WhisperEvent(
                    event_type=EventType.BADGE_EARNED,
                    actor_id=user_id,
                    story_id=story_id,
                    metadata=metadata,
                    is_public=True,
                ),
            )
        except Exception:
            logger.exception("Failed to record badge_earned event for %s", user_id)

        self._schedule_notification(
            {
                "event_type": str(EventType.BADGE_EARNED),
                "actor_id": user_id,
                "story_id": story_id,
                "metadata": {**metadata, "user_id": user_id},
            }
        )

        story_info = f' for "{story_title}"' if story_title else ""
        logger.info("[Badge] %s earned%s by %s", badge_type, story_info, display_name)

        return AwardedBadge(
            badge_type=definition.badge_type,
            badge_name=definition.display_name,
            badge_tagline=definition.tagline,
            story_id=story_id,
            story_title=story_title,
            user_id=user_id,
            user_display_name=display_name,
            earned_at=earned_at,
        )

    async def drain(self) -> None:
        """Wait for every notification handed to the bridge so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    # ── private ─────────────────────────────────────────────────────────

    async def _display_name(self, user_id: str) -> str:
        try:
            name = await asyncio.to_thread(self._store.display_name, user_id)
        except Exception:
            logger.exception("Could not resolve display name for %s", user_id)
            return DEFAULT_DISPLAY_NAME
        return name or DEFAULT_DISPLAY_NAME

    def _schedule_notification(self, event: dict[str, Any]) -> None:
        task = asyncio.create_task(self._deliver(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, event: dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self._bridge.notify, event)
        except Exception:
            logger.exception("Notification processing failed for %s", event["event_type"])
