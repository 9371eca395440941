"""Read side of the badge ledger: what a user has earned, and since when."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime

from whisperbadges.catalog import get_definition
from whisperbadges.models import BadgeSummary, EarnedBadge
from whisperbadges.store import BadgeStore


def summarize(badge: EarnedBadge) -> BadgeSummary:
    """Join a ledger row with its catalog entry.

    Types missing from the catalog keep their raw name and an "unknown" level.
    """
    definition = get_definition(badge.badge_type)
    return BadgeSummary(
        badge_type=badge.badge_type,
        display_name=definition.display_name if definition else badge.badge_type,
        tagline=definition.tagline if definition else "",
        level=str(definition.scope) if definition else "unknown",
        story_title=badge.story_title or None,
        earned_at=badge.earned_at,
    )


def user_badges(store: BadgeStore, user_id: str) -> list[BadgeSummary]:
    """All badges *user_id* holds, newest first."""
    return [summarize(b) for b in store.earned_badges(user_id)]


def badges_since(store: BadgeStore, user_id: str, since: datetime | str) -> list[BadgeSummary]:
    """Badges earned strictly after *since*, newest first.

    *since* may be an ISO-8601 string; it must carry a UTC offset.
    """
    if isinstance(since, str):
        since = datetime.fromisoformat(since)
    if since.tzinfo is None:
        raise ValueError("since must be a timezone-aware timestamp")
    return [summarize(b) for b in store.earned_badges(user_id, since=since)]


def group_by_type(summaries: list[BadgeSummary]) -> dict[str, list[BadgeSummary]]:
    grouped: dict[str, list[BadgeSummary]] = defaultdict(list)
    for summary in summaries:
        grouped[summary.badge_type].append(summary)
    return dict(grouped)
