"""Eligibility dispatcher: run the rules a trigger event touches.

Entry point after every feature action. The event kind selects rules from a
static table; the selected rules run concurrently, each inside its own error
boundary, and the badges they newly persisted come back as a list. Nothing
in here raises to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType

from whisperbadges.awards import AwardWriter
from whisperbadges.models import AwardedBadge
from whisperbadges.notifications import NotificationBridge
from whisperbadges.rules import (
    Rule,
    RuleContext,
    check_chainmaker,
    check_current,
    check_ember,
    check_lamplighter,
    check_resonant,
    check_wanderer,
    check_worldwalker,
)
from whisperbadges.store import BadgeStore

logger = logging.getLogger(__name__)


class TriggerKind(StrEnum):
    BOOK_CLAIMED = "book_claimed"
    BOOK_GIFTED = "book_gifted"
    BOOK_FINISHED = "book_finished"
    RESONANCE_LEFT = "resonance_left"


@dataclass(frozen=True)
class Trigger:
    rule: Rule
    needs_story: bool = True

    @property
    def name(self) -> str:
        return self.rule.__name__


DISPATCH_TABLE: Mapping[TriggerKind, tuple[Trigger, ...]] = MappingProxyType(
    {
        TriggerKind.BOOK_CLAIMED: (
            Trigger(check_ember),
            Trigger(check_current),
            Trigger(check_chainmaker),
            Trigger(check_lamplighter, needs_story=False),
        ),
        TriggerKind.BOOK_GIFTED: (
            Trigger(check_ember),
            Trigger(check_current),
            Trigger(check_chainmaker),
        ),
        TriggerKind.BOOK_FINISHED: (
            Trigger(check_worldwalker),
            Trigger(check_wanderer),
        ),
        TriggerKind.RESONANCE_LEFT: (Trigger(check_resonant),),
    }
)

_unmapped = set(TriggerKind) - set(DISPATCH_TABLE)
if _unmapped:
    raise RuntimeError(f"DISPATCH_TABLE has no entry for {sorted(_unmapped)}")


def select_triggers(kind: TriggerKind, story_id: str | None) -> list[Trigger]:
    """Rules to run for *kind*; story-bound rules drop out without a story."""
    return [t for t in DISPATCH_TABLE[kind] if story_id or not t.needs_story]


class BadgeEngine:
    """Owns the store, the award writer and any in-flight background work."""

    def __init__(self, store: BadgeStore, bridge: NotificationBridge) -> None:
        self.store = store
        self.writer = AwardWriter(store, bridge)
        self._ctx = RuleContext(store=store, writer=self.writer)
        self._background: set[asyncio.Task[list[AwardedBadge]]] = set()

    async def evaluate(
        self, kind: str, actor_id: str, story_id: str | None = None
    ) -> list[AwardedBadge]:
        """Evaluate every rule *kind* triggers; return badges newly awarded.

        Each returned badge is already persisted and its notification queued.
        Unknown kinds and any unexpected failure yield an empty list.
        """
        try:
            trigger_kind = TriggerKind(kind)
        except ValueError:
            logger.warning("Ignoring badge evaluation for unknown event kind %r", kind)
            return []

        try:
            triggers = select_triggers(trigger_kind, story_id)
            if not triggers:
                return []
            async with asyncio.TaskGroup() as tg:
                tasks = [
                    tg.create_task(self._run_guarded(t, actor_id, story_id)) for t in triggers
                ]
            awarded = [badge for task in tasks if (badge := task.result()) is not None]
        except Exception:
            logger.exception(
                "Badge eligibility check failed (kind=%s actor=%s story=%s)",
                kind, actor_id, story_id,
            )
            return []

        logger.debug(
            "Evaluated %d rule(s) for %s: %d new badge(s)", len(triggers), kind, len(awarded)
        )
        return awarded

    def evaluate_in_background(
        self, kind: str, actor_id: str, story_id: str | None = None
    ) -> asyncio.Task[list[AwardedBadge]]:
        """Schedule :meth:`evaluate` without waiting for it.

        For feature actions that must respond before badges are settled.
        Must be called from a running event loop.
        """
        task = asyncio.create_task(self.evaluate(kind, actor_id, story_id))
        self._background.add(task)
        task.add_done_callback(self._finish_background)
        return task

    async def drain(self) -> None:
        """Wait for background evaluations and the notifications they queued."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self.writer.drain()

    # ── private ─────────────────────────────────────────────────────────

    async def _run_guarded(
        self, trigger: Trigger, actor_id: str, story_id: str | None
    ) -> AwardedBadge | None:
        try:
            return await trigger.rule(self._ctx, actor_id, story_id)
        except Exception:
            logger.exception(
                "Badge rule %s failed (actor=%s story=%s)", trigger.name, actor_id, story_id
            )
            return None

    def _finish_background(self, task: asyncio.Task[list[AwardedBadge]]) -> None:
        self._background.discard(task)
        if task.cancelled():
            logger.debug("Background badge evaluation cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background badge evaluation failed: %r", exc)
