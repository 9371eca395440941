"""Feature actions that produce badge-triggering events.

Each action validates, writes its own rows and whisper event, then schedules
badge evaluation in the background. None of them waits on the badge engine,
so a slow or broken engine cannot delay or fail the action.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from whisperbadges import config
from whisperbadges.ancestry import chain_depth
from whisperbadges.awards import DEFAULT_DISPLAY_NAME
from whisperbadges.dispatcher import BadgeEngine, TriggerKind
from whisperbadges.models import EventType, ShareLink, Story, WhisperEvent
from whisperbadges.store import BadgeStore

logger = logging.getLogger(__name__)


class ShareLinkError(Exception):
    """Base class for rejected share-link operations."""


class StoryNotFound(ShareLinkError):
    pass


class NotPermitted(ShareLinkError):
    pass


class LinkNotFound(ShareLinkError):
    pass


class LinkExpired(ShareLinkError):
    """The gift has returned to the Mists."""


class AlreadyClaimed(ShareLinkError):
    pass


class AlreadyOnShelf(ShareLinkError):
    pass


class DuplicateResonance(Exception):
    """A reader may leave one resonance per story."""


async def create_share_link(
    store: BadgeStore,
    engine: BadgeEngine,
    sender_id: str,
    story_id: str,
    parent_link_id: str | None = None,
    *,
    now: datetime | None = None,
) -> ShareLink:
    """Create a gift link for *story_id*, continuing *parent_link_id*'s chain.

    The sender must be the author or have the story on their shelf. Depth is
    fixed here from the parent; an unknown parent starts a fresh chain.
    """
    now = now or datetime.now(UTC)
    story = await _require_story(store, story_id)

    is_owner = story.author_id == sender_id
    if not is_owner and not await asyncio.to_thread(store.is_on_shelf, sender_id, story_id):
        raise NotPermitted("You do not have permission to share this story")

    parent = None
    if parent_link_id:
        parent = await asyncio.to_thread(store.get_share_link, parent_link_id)
        if parent is None:
            logger.warning("Parent link %s not found, using depth 0", parent_link_id)

    link = ShareLink(
        id=str(uuid.uuid4()),
        token=str(uuid.uuid4()),
        sender_id=sender_id,
        story_id=story_id,
        parent_link_id=parent.id if parent else None,
        share_chain_depth=chain_depth(parent),
        created_at=now,
        expires_at=now + timedelta(days=config.SHARE_LINK_TTL_DAYS),
    )
    await asyncio.to_thread(store.insert_share_link, link)
    logger.info(
        'Share link created for "%s" by %s (chain depth: %d)',
        story.title, sender_id, link.share_chain_depth,
    )

    await _record_event(
        store,
        EventType.BOOK_GIFTED,
        sender_id,
        story_id,
        {
            "display_name": await _display_name(store, sender_id),
            "story_title": story.title,
            "share_chain_depth": link.share_chain_depth,
        },
    )
    engine.evaluate_in_background(TriggerKind.BOOK_GIFTED, sender_id, story_id)
    return link


async def claim_share_link(
    store: BadgeStore,
    engine: BadgeEngine,
    token: str,
    claimer_id: str,
    *,
    now: datetime | None = None,
) -> ShareLink:
    """Claim a gift link: shelve the story and mark the link as taken."""
    now = now or datetime.now(UTC)
    link = await asyncio.to_thread(store.get_share_link_by_token, token)
    if link is None:
        raise LinkNotFound("Share link not found")
    if link.expires_at < now:
        raise LinkExpired("This gift has returned to the Mists.")
    if link.claimed_by:
        raise AlreadyClaimed("This share link has already been claimed")
    if link.sender_id == claimer_id:
        raise NotPermitted("You cannot claim your own share link")
    if await asyncio.to_thread(store.is_on_shelf, claimer_id, link.story_id):
        raise AlreadyOnShelf("This book is already on your shelf")

    story = await _require_story(store, link.story_id)
    if not await asyncio.to_thread(store.claim_link, link.id, claimer_id, now):
        raise AlreadyClaimed("This share link has already been claimed")
    logger.info('Share link claimed: "%s" sent to %s', story.title, claimer_id)

    await _record_event(
        store,
        EventType.BOOK_CLAIMED,
        claimer_id,
        link.story_id,
        {
            "display_name": await _display_name(store, claimer_id),
            "story_title": story.title,
            "sender_id": link.sender_id,
        },
    )
    engine.evaluate_in_background(TriggerKind.BOOK_CLAIMED, claimer_id, link.story_id)
    return link.model_copy(update={"claimed_by": claimer_id, "claimed_at": now})


async def leave_resonance(
    store: BadgeStore, engine: BadgeEngine, user_id: str, story_id: str, word: str
) -> None:
    story = await _require_story(store, story_id)
    word = word.strip().lower()
    if not word:
        raise ValueError("A resonance needs a word")
    if not await asyncio.to_thread(store.add_resonance, story_id, user_id, word):
        raise DuplicateResonance(f"{user_id} already left a resonance on {story_id}")

    await _record_event(
        store,
        EventType.RESONANCE_LEFT,
        user_id,
        story_id,
        {
            "display_name": await _display_name(store, user_id),
            "story_title": story.title,
            "word": word,
        },
    )
    engine.evaluate_in_background(TriggerKind.RESONANCE_LEFT, user_id, story_id)


async def finish_book(
    store: BadgeStore,
    engine: BadgeEngine,
    user_id: str,
    story_id: str,
    timezone: str | None = None,
) -> None:
    """Record that *user_id* finished a story, tagged with their timezone."""
    story = await _require_story(store, story_id)
    metadata: dict[str, Any] = {
        "display_name": await _display_name(store, user_id),
        "story_title": story.title,
    }
    if timezone:
        metadata["timezone"] = timezone
    await _record_event(store, EventType.BOOK_FINISHED, user_id, story_id, metadata)
    engine.evaluate_in_background(TriggerKind.BOOK_FINISHED, user_id, story_id)


# ── helpers ────────────────────────────────────────────────────────────────


async def _require_story(store: BadgeStore, story_id: str) -> Story:
    story = await asyncio.to_thread(store.get_story, story_id)
    if story is None:
        raise StoryNotFound(f"Story not found: {story_id}")
    return story


async def _display_name(store: BadgeStore, user_id: str) -> str:
    return await asyncio.to_thread(store.display_name, user_id) or DEFAULT_DISPLAY_NAME


async def _record_event(
    store: BadgeStore,
    event_type: EventType,
    actor_id: str,
    story_id: str | None,
    metadata: dict[str, Any],
) -> None:
    # The action's own rows are already written; a lost feed event is not fatal.
    try:
        await asyncio.to_thread(
            store.insert_event,
            WhisperEvent(
                event_type=event_type, actor_id=actor_id, story_id=story_id, metadata=metadata
            ),
        )
    except Exception:
        logger.exception("Error creating %s whisper event", event_type)
