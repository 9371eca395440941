"""Tests for the feature actions that feed the badge engine."""

import asyncio
from collections.abc import Awaitable
from datetime import timedelta
from typing import TypeVar

import pytest
from conftest import NOW, make_story

from whisperbadges import actions
from whisperbadges.dispatcher import BadgeEngine
from whisperbadges.models import BadgeType, EventType, ShelfSource
from whisperbadges.store import BadgeStore

T = TypeVar("T")


def _run(engine: BadgeEngine, coro: Awaitable[T]) -> T:
    async def go() -> T:
        result = await coro
        await engine.drain()
        return result

    return asyncio.run(go())


class TestCreateShareLink:
    def test_author_creates_root_link(self, store: BadgeStore, engine: BadgeEngine) -> None:
        make_story(store)
        link = _run(engine, actions.create_share_link(store, engine, "author", "story-1", now=NOW))

        assert link.share_chain_depth == 0
        assert link.parent_link_id is None
        assert link.expires_at == NOW + timedelta(days=7)
        [event] = store.events(EventType.BOOK_GIFTED)
        assert event.metadata["share_chain_depth"] == 0
        assert event.metadata["story_title"] == "Title of story-1"

    def test_reshare_increments_depth(self, store: BadgeStore, engine: BadgeEngine) -> None:
        make_story(store)
        root = _run(engine, actions.create_share_link(store, engine, "author", "story-1"))
        store.add_to_shelf("r1", "story-1", ShelfSource.SHARED, "author")
        child = _run(engine, actions.create_share_link(store, engine, "r1", "story-1", root.id))

        assert child.share_chain_depth == 1
        assert child.parent_link_id == root.id

    def test_unknown_parent_starts_fresh_chain(
        self, store: BadgeStore, engine: BadgeEngine
    ) -> None:
        make_story(store)
        link = _run(engine, actions.create_share_link(store, engine, "author", "story-1", "nope"))
        assert link.share_chain_depth == 0
        assert link.parent_link_id is None

    def test_stranger_cannot_share(self, store: BadgeStore, engine: BadgeEngine) -> None:
        make_story(store)
        with pytest.raises(actions.NotPermitted):
            _run(engine, actions.create_share_link(store, engine, "stranger", "story-1"))

    def test_missing_story(self, store: BadgeStore, engine: BadgeEngine) -> None:
        with pytest.raises(actions.StoryNotFound):
            _run(engine, actions.create_share_link(store, engine, "author", "gone"))


class TestClaimShareLink:
    def _link(self, store: BadgeStore, engine: BadgeEngine) -> str:
        make_story(store)
        link = _run(engine, actions.create_share_link(store, engine, "author", "story-1"))
        return link.token

    def test_claim_shelves_story(self, store: BadgeStore, engine: BadgeEngine) -> None:
        token = self._link(store, engine)
        store.add_account("newbie")
        claimed = _run(engine, actions.claim_share_link(store, engine, token, "newbie"))

        assert claimed.claimed_by == "newbie"
        assert store.is_on_shelf("newbie", "story-1")
        [event] = store.events(EventType.BOOK_CLAIMED)
        assert event.metadata["sender_id"] == "author"

    def test_new_account_claim_lights_the_lamp(
        self, store: BadgeStore, engine: BadgeEngine
    ) -> None:
        token = self._link(store, engine)
        store.add_account("newbie")
        _run(engine, actions.claim_share_link(store, engine, token, "newbie"))

        [badge] = store.earned_badges("author")
        assert badge.badge_type == BadgeType.LAMPLIGHTER

    def test_unknown_token(self, store: BadgeStore, engine: BadgeEngine) -> None:
        with pytest.raises(actions.LinkNotFound):
            _run(engine, actions.claim_share_link(store, engine, "nope", "r1"))

    def test_expired(self, store: BadgeStore, engine: BadgeEngine) -> None:
        token = self._link(store, engine)
        later = NOW + timedelta(days=3650)
        with pytest.raises(actions.LinkExpired):
            _run(engine, actions.claim_share_link(store, engine, token, "r1", now=later))

    def test_claimed_twice(self, store: BadgeStore, engine: BadgeEngine) -> None:
        token = self._link(store, engine)
        _run(engine, actions.claim_share_link(store, engine, token, "r1"))
        with pytest.raises(actions.AlreadyClaimed):
            _run(engine, actions.claim_share_link(store, engine, token, "r2"))

    def test_losing_a_claim_race_leaves_shelf_untouched(
        self, store: BadgeStore, engine: BadgeEngine, monkeypatch
    ) -> None:
        token = self._link(store, engine)
        stale = store.get_share_link_by_token(token)
        assert stale is not None
        store.claim_link(stale.id, "winner", NOW)
        monkeypatch.setattr(store, "get_share_link_by_token", lambda _token: stale)

        with pytest.raises(actions.AlreadyClaimed):
            _run(engine, actions.claim_share_link(store, engine, token, "loser"))
        assert not store.is_on_shelf("loser", "story-1")
        assert store.events(EventType.BOOK_CLAIMED) == []

    def test_own_link(self, store: BadgeStore, engine: BadgeEngine) -> None:
        token = self._link(store, engine)
        with pytest.raises(actions.NotPermitted):
            _run(engine, actions.claim_share_link(store, engine, token, "author"))

    def test_already_on_shelf(self, store: BadgeStore, engine: BadgeEngine) -> None:
        token = self._link(store, engine)
        store.add_to_shelf("r1", "story-1")
        with pytest.raises(actions.AlreadyOnShelf):
            _run(engine, actions.claim_share_link(store, engine, token, "r1"))


class TestResonanceAndFinish:
    def test_one_resonance_per_reader(self, store: BadgeStore, engine: BadgeEngine) -> None:
        make_story(store)
        _run(engine, actions.leave_resonance(store, engine, "r1", "story-1", " Hope "))
        with pytest.raises(actions.DuplicateResonance):
            _run(engine, actions.leave_resonance(store, engine, "r1", "story-1", "longing"))
        [event] = store.events(EventType.RESONANCE_LEFT)
        assert event.metadata["word"] == "hope"

    def test_finishing_from_two_regions(self, store: BadgeStore, engine: BadgeEngine) -> None:
        make_story(store)
        _run(engine, actions.finish_book(store, engine, "r1", "story-1", "Europe/Paris"))
        assert store.earned_badges("author") == []

        _run(engine, actions.finish_book(store, engine, "r2", "story-1", "America/Chicago"))
        [badge] = store.earned_badges("author")
        assert badge.badge_type == BadgeType.WORLDWALKER
