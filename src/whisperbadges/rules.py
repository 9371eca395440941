"""Badge rules, one async evaluator per badge.

Each evaluator reads the aggregate it needs, and when the threshold is met
hands the credited user to the award writer. All share the signature
``(ctx, actor_id, story_id) -> AwardedBadge | None`` so the dispatcher can
treat them uniformly. A missing subject, or zero rows, is "not qualifying".
Fetch errors are left to propagate; the dispatcher isolates them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, TypeVar

from whisperbadges.ancestry import is_ancestor
from whisperbadges.awards import AwardWriter
from whisperbadges.models import AwardedBadge, BadgeType, EventType, Story
from whisperbadges.store import BadgeStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ── Thresholds (inclusive) ─────────────────────────────────────────────────
EMBER_MIN_READERS = 5
CURRENT_MIN_DEPTH = 3
WORLDWALKER_MIN_REGIONS = 2
RESONANT_MIN_RESONANCES = 25
WANDERER_MIN_FINISHED = 10
LAMPLIGHTER_WINDOW = timedelta(hours=24)
CHAINMAKER_MIN_DEPTH = 3


@dataclass(frozen=True)
class RuleContext:
    store: BadgeStore
    writer: AwardWriter


Rule = Callable[[RuleContext, str, str | None], Awaitable[AwardedBadge | None]]


async def _fetch(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    return await asyncio.to_thread(fn, *args, **kwargs)


async def _story(ctx: RuleContext, story_id: str | None) -> Story | None:
    if not story_id:
        return None
    return await _fetch(ctx.store.get_story, story_id)


async def _award_author(ctx: RuleContext, badge: BadgeType, story: Story) -> AwardedBadge | None:
    return await ctx.writer.award(badge, story.author_id, story.story_id, story.title)


def timezone_region(timezone: Any) -> str | None:
    """Coarse region of an IANA-style name: ``"Europe/Paris"`` → ``"Europe"``.

    Missing, empty or non-string values have no region.
    """
    if not isinstance(timezone, str) or not timezone:
        return None
    region = timezone.split("/", 1)[0]
    return region or None


# ── Story-level ────────────────────────────────────────────────────────────


async def check_ember(ctx: RuleContext, actor_id: str, story_id: str | None) -> AwardedBadge | None:
    """Ember: the story sits on at least five readers' shelves."""
    story = await _story(ctx, story_id)
    if story is None:
        return None
    readers = await _fetch(ctx.store.shelf_reader_count, story.story_id)
    if readers >= EMBER_MIN_READERS:
        return await _award_author(ctx, BadgeType.EMBER, story)
    return None


async def check_current(ctx: RuleContext, actor_id: str, story_id: str | None) -> AwardedBadge | None:
    """Current: some share link of the story is three re-shares deep."""
    story = await _story(ctx, story_id)
    if story is None:
        return None
    depth = await _fetch(ctx.store.max_chain_depth, story.story_id)
    if depth >= CURRENT_MIN_DEPTH:
        return await _award_author(ctx, BadgeType.CURRENT, story)
    return None


async def check_worldwalker(
    ctx: RuleContext, actor_id: str, story_id: str | None
) -> AwardedBadge | None:
    """Worldwalker: readers finished the story from two or more regions."""
    story = await _story(ctx, story_id)
    if story is None:
        return None
    events = await _fetch(ctx.store.events, EventType.BOOK_FINISHED, story_id=story.story_id)
    regions = {
        region
        for event in events
        if (region := timezone_region(event.metadata.get("timezone"))) is not None
    }
    if len(regions) >= WORLDWALKER_MIN_REGIONS:
        return await _award_author(ctx, BadgeType.WORLDWALKER, story)
    return None


async def check_resonant(ctx: RuleContext, actor_id: str, story_id: str | None) -> AwardedBadge | None:
    story = await _story(ctx, story_id)
    if story is None:
        return None
    count = await _fetch(ctx.store.resonance_count, story.story_id)
    if count >= RESONANT_MIN_RESONANCES:
        return await _award_author(ctx, BadgeType.RESONANT, story)
    return None


# ── User-level ─────────────────────────────────────────────────────────────


async def check_wanderer(ctx: RuleContext, actor_id: str, story_id: str | None) -> AwardedBadge | None:
    """Wanderer: the actor finished ten distinct stories from their shelf."""
    finished = await _fetch(ctx.store.finished_story_ids, actor_id)
    if not finished:
        return None
    shelf = await _fetch(ctx.store.shelf_story_ids, actor_id)
    if len(finished & shelf) >= WANDERER_MIN_FINISHED:
        return await ctx.writer.award(BadgeType.WANDERER, actor_id)
    return None


async def check_lamplighter(
    ctx: RuleContext, actor_id: str, story_id: str | None
) -> AwardedBadge | None:
    """Lamplighter goes to the sender of a link the actor claimed as a new account.

    "New" means the claim happened within 24 hours of the account's creation.
    """
    links = await _fetch(ctx.store.links_claimed_by, actor_id)
    if not links:
        return None
    account = await _fetch(ctx.store.get_account, actor_id)
    if account is None:
        return None

    for link in links:
        if link.claimed_at is None:
            continue
        if link.claimed_at - account.created_at <= LAMPLIGHTER_WINDOW:
            return await ctx.writer.award(BadgeType.LAMPLIGHTER, link.sender_id)
    return None


async def check_chainmaker(
    ctx: RuleContext, actor_id: str, story_id: str | None
) -> AwardedBadge | None:
    """Chainmaker: a chain three deep descends from one of the actor's links."""
    own_links = await _fetch(ctx.store.link_ids_sent_by, actor_id)
    if not own_links:
        return None
    deep_links = await _fetch(ctx.store.links_at_depth, CHAINMAKER_MIN_DEPTH)

    for link in deep_links:
        if await is_ancestor(ctx.store, link.parent_link_id, own_links):
            return await ctx.writer.award(BadgeType.CHAINMAKER, actor_id)
    return None
