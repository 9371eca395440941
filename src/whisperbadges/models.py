"""Domain models shared by the store, the rules and the award writer."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class BadgeType(StrEnum):
    EMBER = "ember"
    CURRENT = "current"
    WORLDWALKER = "worldwalker"
    RESONANT = "resonant"
    WANDERER = "wanderer"
    LAMPLIGHTER = "lamplighter"
    CHAINMAKER = "chainmaker"


class BadgeScope(StrEnum):
    STORY = "story"
    USER = "user"


class EventType(StrEnum):
    """Every kind of whisper event the store accepts."""

    BOOK_FINISHED = "book_finished"
    RESONANCE_LEFT = "resonance_left"
    BADGE_EARNED = "badge_earned"
    BOOK_PUBLISHED = "book_published"
    BOOK_GIFTED = "book_gifted"
    BOOK_CLAIMED = "book_claimed"


class ShelfSource(StrEnum):
    SHARED = "shared"
    BROWSED = "browsed"


class BadgeDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    badge_type: BadgeType
    display_name: str
    tagline: str
    scope: BadgeScope


class Story(BaseModel):
    story_id: str
    author_id: str
    title: str = ""


class Account(BaseModel):
    user_id: str
    created_at: datetime


class ShareLink(BaseModel):
    id: str
    token: str
    sender_id: str
    story_id: str
    parent_link_id: str | None = None
    share_chain_depth: int = Field(default=0, ge=0)
    created_at: datetime
    expires_at: datetime
    claimed_by: str | None = None
    claimed_at: datetime | None = None


class WhisperEvent(BaseModel):
    event_type: EventType
    actor_id: str
    story_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    is_public: bool = True
    created_at: datetime | None = None


class EarnedBadge(BaseModel):
    badge_type: str
    user_id: str
    story_id: str | None = None
    story_title: str | None = None
    earned_at: datetime


class AwardedBadge(BaseModel):
    """A badge persisted for the first time during an evaluation."""

    badge_type: BadgeType
    badge_name: str
    badge_tagline: str
    story_id: str | None = None
    story_title: str | None = None
    user_id: str
    user_display_name: str
    earned_at: datetime


class BadgeSummary(BaseModel):
    badge_type: str
    display_name: str
    tagline: str = ""
    level: str = "unknown"  # "story", "user", or "unknown" for retired types
    story_title: str | None = None
    earned_at: datetime
