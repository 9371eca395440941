"""Tests for the eligibility dispatcher: routing, isolation and idempotence."""

import asyncio
from datetime import timedelta

from conftest import NOW, RecordingBridge, make_chain, make_link, make_story

from whisperbadges.dispatcher import DISPATCH_TABLE, BadgeEngine, TriggerKind, select_triggers
from whisperbadges.models import AwardedBadge, BadgeType, EventType
from whisperbadges.store import BadgeStore


def _evaluate(
    engine: BadgeEngine, kind: str, actor: str, story: str | None = None
) -> list[AwardedBadge]:
    async def go() -> list[AwardedBadge]:
        awarded = await engine.evaluate(kind, actor, story)
        await engine.drain()
        return awarded

    return asyncio.run(go())


def _shelve(store: BadgeStore, n: int, story: str = "story-1") -> None:
    for i in range(n):
        store.add_to_shelf(f"reader-{i}", story)


class TestDispatchTable:
    def test_every_kind_is_mapped(self) -> None:
        assert set(DISPATCH_TABLE) == set(TriggerKind)

    def test_claim_without_story_only_runs_lamplighter(self) -> None:
        names = [t.name for t in select_triggers(TriggerKind.BOOK_CLAIMED, None)]
        assert names == ["check_lamplighter"]

    def test_claim_with_story(self) -> None:
        names = {t.name for t in select_triggers(TriggerKind.BOOK_CLAIMED, "s")}
        assert names == {"check_ember", "check_current", "check_chainmaker", "check_lamplighter"}

    def test_gift_never_runs_lamplighter(self) -> None:
        names = {t.name for t in select_triggers(TriggerKind.BOOK_GIFTED, "s")}
        assert "check_lamplighter" not in names

    def test_finished_without_story_runs_nothing(self) -> None:
        assert select_triggers(TriggerKind.BOOK_FINISHED, None) == []


class TestEvaluate:
    def test_ember_scenario(self, store: BadgeStore, engine: BadgeEngine) -> None:
        make_story(store)
        _shelve(store, 5)

        awarded = _evaluate(engine, "book_claimed", "reader-4", "story-1")
        assert [(b.badge_type, b.story_id, b.user_id) for b in awarded] == [
            (BadgeType.EMBER, "story-1", "author")
        ]
        assert _evaluate(engine, "book_claimed", "reader-4", "story-1") == []

    def test_lamplighter_scenario(self, store: BadgeStore, engine: BadgeEngine) -> None:
        make_story(store)
        store.add_account("V", created_at=NOW - timedelta(hours=10))
        make_link(store, "U", claimed_by="V", claimed_at=NOW)

        awarded = _evaluate(engine, "book_claimed", "V", "story-1")
        assert [(b.badge_type, b.user_id) for b in awarded] == [(BadgeType.LAMPLIGHTER, "U")]

    def test_several_badges_in_one_call(self, store: BadgeStore, engine: BadgeEngine) -> None:
        make_story(store)
        _shelve(store, 5)
        make_chain(store, ["origin", "b", "c", "d"])

        awarded = _evaluate(engine, "book_gifted", "origin", "story-1")
        assert {b.badge_type for b in awarded} == {
            BadgeType.EMBER,
            BadgeType.CURRENT,
            BadgeType.CHAINMAKER,
        }

    def test_unknown_kind_returns_empty(self, engine: BadgeEngine) -> None:
        assert _evaluate(engine, "book_published", "u1", "s1") == []

    def test_nothing_qualifies(self, store: BadgeStore, engine: BadgeEngine) -> None:
        make_story(store)
        assert _evaluate(engine, "resonance_left", "r1", "story-1") == []


class TestErrorIsolation:
    def test_failing_rule_does_not_block_siblings(
        self, store: BadgeStore, engine: BadgeEngine, monkeypatch
    ) -> None:
        make_story(store)
        _shelve(store, 5)

        def broken(*args: object) -> int:
            raise ConnectionError("store unreachable")

        monkeypatch.setattr(store, "max_chain_depth", broken)
        monkeypatch.setattr(store, "link_ids_sent_by", broken)

        awarded = _evaluate(engine, "book_claimed", "reader-0", "story-1")
        assert [b.badge_type for b in awarded] == [BadgeType.EMBER]

    def test_resonant_failure_still_yields_ember(
        self, store: BadgeStore, engine: BadgeEngine, monkeypatch
    ) -> None:
        make_story(store)
        _shelve(store, 5)

        def broken(*args: object) -> int:
            raise ConnectionError("store unreachable")

        monkeypatch.setattr(store, "resonance_count", broken)
        resonant = _evaluate(engine, "resonance_left", "reader-0", "story-1")
        ember = _evaluate(engine, "book_gifted", "reader-0", "story-1")

        assert resonant == []
        assert [b.badge_type for b in ember] == [BadgeType.EMBER]

    def test_total_failure_degrades_to_empty(
        self, store: BadgeStore, engine: BadgeEngine, monkeypatch
    ) -> None:
        def explode(*args: object) -> list[object]:
            raise RuntimeError("orchestration broke")

        monkeypatch.setattr("whisperbadges.dispatcher.select_triggers", explode)
        assert _evaluate(engine, "book_claimed", "u1", "story-1") == []


class TestConcurrency:
    def test_simultaneous_triggers_award_once(
        self, store: BadgeStore, engine: BadgeEngine, bridge: RecordingBridge
    ) -> None:
        make_story(store)
        _shelve(store, 5)

        async def race() -> list[list[AwardedBadge]]:
            results = await asyncio.gather(
                engine.evaluate("book_claimed", "reader-3", "story-1"),
                engine.evaluate("book_claimed", "reader-4", "story-1"),
            )
            await engine.drain()
            return list(results)

        first, second = asyncio.run(race())
        assert len(first) + len(second) == 1
        assert store.count_earned("ember") == 1
        assert len(store.events(EventType.BADGE_EARNED)) == 1
        assert len(bridge.events) == 1


class TestBackground:
    def test_evaluate_in_background(self, store: BadgeStore, engine: BadgeEngine) -> None:
        make_story(store)
        _shelve(store, 5)

        async def go() -> list[AwardedBadge]:
            task = engine.evaluate_in_background("book_claimed", "reader-1", "story-1")
            await engine.drain()
            return task.result()

        awarded = asyncio.run(go())
        assert [b.badge_type for b in awarded] == [BadgeType.EMBER]
