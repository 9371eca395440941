"""Shared fixtures: a throwaway SQLite store and a recording notification bridge."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from whisperbadges.dispatcher import BadgeEngine
from whisperbadges.models import ShareLink
from whisperbadges.store import BadgeStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class RecordingBridge:
    def __init__(self, fail: bool = False) -> None:
        self.events: list[dict[str, Any]] = []
        self._fail = fail

    def notify(self, event: dict[str, Any]) -> None:
        if self._fail:
            raise RuntimeError("push service down")
        self.events.append(event)


@pytest.fixture
def store(tmp_path: Path) -> BadgeStore:
    return BadgeStore(tmp_path / "badges.sqlite3")


@pytest.fixture
def bridge() -> RecordingBridge:
    return RecordingBridge()


@pytest.fixture
def engine(store: BadgeStore, bridge: RecordingBridge) -> BadgeEngine:
    return BadgeEngine(store, bridge)


def make_story(store: BadgeStore, story_id: str = "story-1", author: str = "author") -> str:
    store.add_account(author, created_at=NOW - timedelta(days=90), display_name="Author")
    store.add_story(story_id, author, title=f"Title of {story_id}")
    return story_id


def make_link(
    store: BadgeStore,
    sender: str,
    story_id: str = "story-1",
    parent: ShareLink | None = None,
    *,
    claimed_by: str | None = None,
    claimed_at: datetime | None = None,
) -> ShareLink:
    link = ShareLink(
        id=str(uuid.uuid4()),
        token=str(uuid.uuid4()),
        sender_id=sender,
        story_id=story_id,
        parent_link_id=parent.id if parent else None,
        share_chain_depth=parent.share_chain_depth + 1 if parent else 0,
        created_at=NOW,
        expires_at=NOW + timedelta(days=7),
        claimed_by=claimed_by,
        claimed_at=claimed_at,
    )
    store.insert_share_link(link)
    return link


def make_chain(store: BadgeStore, senders: list[str], story_id: str = "story-1") -> list[ShareLink]:
    """Links where each one is re-shared from the previous; depths 0..n-1."""
    links: list[ShareLink] = []
    parent = None
    for sender in senders:
        parent = make_link(store, sender, story_id, parent)
        links.append(parent)
    return links
