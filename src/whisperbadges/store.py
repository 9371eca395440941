"""SQLite-backed store for share links, whisper events and earned badges.

Stands in for the managed relational store. The badge engine reads the
aggregate tables (stories, accounts, shelf, resonances) and only ever writes
``earned_badges`` and ``whisper_events``; the remaining writers exist for the
feature actions that produce trigger events.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from whisperbadges.models import (
    Account,
    EarnedBadge,
    EventType,
    ShareLink,
    ShelfSource,
    Story,
    WhisperEvent,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    user_id    TEXT PRIMARY KEY,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS user_preferences (
    user_id      TEXT PRIMARY KEY,
    display_name TEXT
);

CREATE TABLE IF NOT EXISTS stories (
    story_id  TEXT PRIMARY KEY,
    author_id TEXT NOT NULL,
    title     TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS shelf (
    user_id   TEXT NOT NULL,
    story_id  TEXT NOT NULL,
    source    TEXT NOT NULL CHECK (source IN ('shared', 'browsed')),
    shared_by TEXT,
    added_at  TEXT NOT NULL,
    UNIQUE (user_id, story_id)
);

CREATE TABLE IF NOT EXISTS resonances (
    story_id   TEXT NOT NULL,
    user_id    TEXT NOT NULL,
    word       TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (story_id, user_id)
);

CREATE TABLE IF NOT EXISTS share_links (
    id                TEXT PRIMARY KEY,
    token             TEXT NOT NULL UNIQUE,
    sender_id         TEXT NOT NULL,
    story_id          TEXT NOT NULL,
    parent_link_id    TEXT REFERENCES share_links(id),
    share_chain_depth INTEGER NOT NULL DEFAULT 0 CHECK (share_chain_depth >= 0),
    created_at        TEXT NOT NULL,
    expires_at        TEXT NOT NULL,
    claimed_by        TEXT,
    claimed_at        TEXT
);
CREATE INDEX IF NOT EXISTS idx_share_links_sender ON share_links(sender_id);
CREATE INDEX IF NOT EXISTS idx_share_links_story ON share_links(story_id);
CREATE INDEX IF NOT EXISTS idx_share_links_claimed_by ON share_links(claimed_by);

CREATE TABLE IF NOT EXISTS whisper_events (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    event_type TEXT NOT NULL,
    actor_id   TEXT NOT NULL,
    story_id   TEXT,
    metadata   TEXT NOT NULL DEFAULT '{}',
    is_public  INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_whisper_events_story_type
    ON whisper_events(story_id, event_type);
CREATE INDEX IF NOT EXISTS idx_whisper_events_actor_type
    ON whisper_events(actor_id, event_type);

CREATE TABLE IF NOT EXISTS earned_badges (
    badge_type TEXT NOT NULL CHECK (badge_type IN (
        'ember', 'current', 'worldwalker', 'resonant',
        'wanderer', 'lamplighter', 'chainmaker'
    )),
    user_id    TEXT NOT NULL,
    story_id   TEXT,
    earned_at  TEXT NOT NULL
);
-- NULL story_id must collide with NULL, so index the coalesced value.
CREATE UNIQUE INDEX IF NOT EXISTS uq_earned_badges_triple
    ON earned_badges(badge_type, user_id, IFNULL(story_id, ''));
"""


def _now() -> datetime:
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    """Serialise as ISO-8601 in UTC; naive values are taken to be UTC already."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


class BadgeStore:
    """Connection-per-operation SQLite store; safe to call from worker threads."""

    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._init_db()

    # ── accounts / preferences / stories ─────────────────────────────────

    def add_account(
        self,
        user_id: str,
        created_at: datetime | None = None,
        display_name: str | None = None,
    ) -> None:
        with self._transaction() as con:
            con.execute(
                "INSERT OR REPLACE INTO accounts (user_id, created_at) VALUES (?, ?)",
                (user_id, _iso(created_at or _now())),
            )
            if display_name is not None:
                con.execute(
                    """
                    INSERT INTO user_preferences (user_id, display_name) VALUES (?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET display_name = excluded.display_name
                    """,
                    (user_id, display_name),
                )

    def get_account(self, user_id: str) -> Account | None:
        row = self._fetchone(
            "SELECT user_id, created_at FROM accounts WHERE user_id = ?", (user_id,)
        )
        if row is None:
            return None
        return Account(user_id=row["user_id"], created_at=row["created_at"])

    def display_name(self, user_id: str) -> str | None:
        row = self._fetchone(
            "SELECT display_name FROM user_preferences WHERE user_id = ?", (user_id,)
        )
        return row["display_name"] if row else None

    def add_story(self, story_id: str, author_id: str, title: str = "") -> None:
        with self._transaction() as con:
            con.execute(
                "INSERT OR REPLACE INTO stories (story_id, author_id, title) VALUES (?, ?, ?)",
                (story_id, author_id, title),
            )

    def get_story(self, story_id: str) -> Story | None:
        row = self._fetchone(
            "SELECT story_id, author_id, title FROM stories WHERE story_id = ?",
            (story_id,),
        )
        return Story(**dict(row)) if row else None

    # ── shelf ────────────────────────────────────────────────────────────

    def add_to_shelf(
        self,
        user_id: str,
        story_id: str,
        source: ShelfSource = ShelfSource.BROWSED,
        shared_by: str | None = None,
    ) -> bool:
        """Put a story on a user's shelf; return True if it was not there yet."""
        with self._transaction() as con:
            cur = con.execute(
                """
                INSERT OR IGNORE INTO shelf (user_id, story_id, source, shared_by, added_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, story_id, str(source), shared_by, _iso(_now())),
            )
            return cur.rowcount > 0

    def is_on_shelf(self, user_id: str, story_id: str) -> bool:
        row = self._fetchone(
            "SELECT 1 FROM shelf WHERE user_id = ? AND story_id = ?", (user_id, story_id)
        )
        return row is not None

    def shelf_reader_count(self, story_id: str) -> int:
        row = self._fetchone(
            "SELECT COUNT(DISTINCT user_id) AS n FROM shelf WHERE story_id = ?",
            (story_id,),
        )
        return int(row["n"]) if row else 0

    def shelf_story_ids(self, user_id: str) -> set[str]:
        rows = self._fetchall("SELECT story_id FROM shelf WHERE user_id = ?", (user_id,))
        return {r["story_id"] for r in rows}

    # ── resonances ───────────────────────────────────────────────────────

    def add_resonance(self, story_id: str, user_id: str, word: str) -> bool:
        """Record a reaction word; at most one per (user, story)."""
        with self._transaction() as con:
            cur = con.execute(
                """
                INSERT OR IGNORE INTO resonances (story_id, user_id, word, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (story_id, user_id, word, _iso(_now())),
            )
            return cur.rowcount > 0

    def resonance_count(self, story_id: str) -> int:
        row = self._fetchone(
            "SELECT COUNT(*) AS n FROM resonances WHERE story_id = ?", (story_id,)
        )
        return int(row["n"]) if row else 0

    # ── share links ──────────────────────────────────────────────────────

    def insert_share_link(self, link: ShareLink) -> None:
        with self._transaction() as con:
            con.execute(
                """
                INSERT INTO share_links
                    (id, token, sender_id, story_id, parent_link_id, share_chain_depth,
                     created_at, expires_at, claimed_by, claimed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    link.id,
                    link.token,
                    link.sender_id,
                    link.story_id,
                    link.parent_link_id,
                    link.share_chain_depth,
                    _iso(link.created_at),
                    _iso(link.expires_at),
                    link.claimed_by,
                    _iso(link.claimed_at),
                ),
            )

    def claim_link(self, link_id: str, claimer_id: str, claimed_at: datetime) -> bool:
        """Claim an unclaimed link and shelve its story for the claimer.

        Both writes share one transaction. Returns False, with nothing
        written, when the link was already taken.
        """
        with self._transaction() as con:
            cur = con.execute(
                """
                UPDATE share_links SET claimed_by = ?, claimed_at = ?
                WHERE id = ? AND claimed_by IS NULL
                """,
                (claimer_id, _iso(claimed_at), link_id),
            )
            if cur.rowcount == 0:
                return False
            con.execute(
                """
                INSERT OR IGNORE INTO shelf (user_id, story_id, source, shared_by, added_at)
                SELECT ?, story_id, ?, sender_id, ? FROM share_links WHERE id = ?
                """,
                (claimer_id, str(ShelfSource.SHARED), _iso(claimed_at), link_id),
            )
            return True

    def get_share_link(self, link_id: str) -> ShareLink | None:
        row = self._fetchone("SELECT * FROM share_links WHERE id = ?", (link_id,))
        return ShareLink(**dict(row)) if row else None

    def get_share_link_by_token(self, token: str) -> ShareLink | None:
        row = self._fetchone("SELECT * FROM share_links WHERE token = ?", (token,))
        return ShareLink(**dict(row)) if row else None

    def max_chain_depth(self, story_id: str) -> int:
        row = self._fetchone(
            "SELECT MAX(share_chain_depth) AS d FROM share_links WHERE story_id = ?",
            (story_id,),
        )
        return int(row["d"]) if row and row["d"] is not None else 0

    def links_claimed_by(self, user_id: str) -> list[ShareLink]:
        rows = self._fetchall(
            "SELECT * FROM share_links WHERE claimed_by = ? ORDER BY claimed_at",
            (user_id,),
        )
        return [ShareLink(**dict(r)) for r in rows]

    def link_ids_sent_by(self, user_id: str) -> set[str]:
        rows = self._fetchall("SELECT id FROM share_links WHERE sender_id = ?", (user_id,))
        return {r["id"] for r in rows}

    def links_at_depth(self, min_depth: int) -> list[ShareLink]:
        rows = self._fetchall(
            "SELECT * FROM share_links WHERE share_chain_depth >= ?", (min_depth,)
        )
        return [ShareLink(**dict(r)) for r in rows]

    # ── whisper events ───────────────────────────────────────────────────

    def insert_event(self, event: WhisperEvent) -> int:
        """Append a whisper event; return its row id."""
        with self._transaction() as con:
            cur = con.execute(
                """
                INSERT INTO whisper_events
                    (event_type, actor_id, story_id, metadata, is_public, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    str(event.event_type),
                    event.actor_id,
                    event.story_id,
                    json.dumps(event.metadata),
                    int(event.is_public),
                    _iso(event.created_at or _now()),
                ),
            )
            return int(cur.lastrowid or 0)

    def events(
        self,
        event_type: EventType | None = None,
        *,
        story_id: str | None = None,
        actor_id: str | None = None,
    ) -> list[WhisperEvent]:
        """Return events in insertion order, optionally filtered."""
        clauses: list[str] = []
        params: list[Any] = []
        if event_type is not None:
            clauses.append("event_type = ?")
            params.append(str(event_type))
        if story_id is not None:
            clauses.append("story_id = ?")
            params.append(story_id)
        if actor_id is not None:
            clauses.append("actor_id = ?")
            params.append(actor_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetchall(f"SELECT * FROM whisper_events {where} ORDER BY id", tuple(params))
        return [
            WhisperEvent(
                event_type=r["event_type"],
                actor_id=r["actor_id"],
                story_id=r["story_id"],
                metadata=json.loads(r["metadata"] or "{}"),
                is_public=bool(r["is_public"]),
                created_at=r["created_at"],
            )
            for r in rows
        ]

    def finished_story_ids(self, user_id: str) -> set[str]:
        rows = self._fetchall(
            """
            SELECT DISTINCT story_id FROM whisper_events
            WHERE actor_id = ? AND event_type = ? AND story_id IS NOT NULL
            """,
            (user_id, str(EventType.BOOK_FINISHED)),
        )
        return {r["story_id"] for r in rows}

    # ── earned badges ────────────────────────────────────────────────────

    def insert_earned_badge(
        self, badge_type: str, user_id: str, story_id: str | None = None
    ) -> datetime | None:
        """Record a badge for the triple; return ``earned_at``, or None if already held.

        The unique index on the triple is the only concurrency control: only a
        violation of that index means "already held". Any other failure,
        including CHECK and NOT NULL violations, propagates.
        """
        earned_at = _now()
        try:
            with self._transaction() as con:
                con.execute(
                    """
                    INSERT INTO earned_badges (badge_type, user_id, story_id, earned_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (badge_type, user_id, story_id, _iso(earned_at)),
                )
        except sqlite3.IntegrityError as exc:
            if exc.sqlite_errorname != "SQLITE_CONSTRAINT_UNIQUE":
                raise
            return None
        return earned_at

    def earned_badges(self, user_id: str, since: datetime | None = None) -> list[EarnedBadge]:
        """Return a user's badges newest first, with the story title when scoped."""
        sql = """
            SELECT b.badge_type, b.user_id, b.story_id, b.earned_at, s.title AS story_title
            FROM earned_badges b
            LEFT JOIN stories s ON s.story_id = b.story_id
            WHERE b.user_id = ?
        """
        params: list[Any] = [user_id]
        if since is not None:
            sql += " AND b.earned_at > ?"
            params.append(_iso(since.astimezone(UTC)))
        sql += " ORDER BY b.earned_at DESC"
        return [EarnedBadge(**dict(r)) for r in self._fetchall(sql, tuple(params))]

    def count_earned(self, badge_type: str | None = None) -> int:
        if badge_type is None:
            row = self._fetchone("SELECT COUNT(*) AS n FROM earned_badges", ())
        else:
            row = self._fetchone(
                "SELECT COUNT(*) AS n FROM earned_badges WHERE badge_type = ?", (badge_type,)
            )
        return int(row["n"]) if row else 0

    # ── private ─────────────────────────────────────────────────────────

    def _connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(str(self._db_path), timeout=30)
        con.row_factory = sqlite3.Row
        return con

    def _init_db(self) -> None:
        con = self._connect()
        try:
            con.execute("PRAGMA journal_mode=WAL")
            con.executescript(_SCHEMA)
        finally:
            con.close()

    def _transaction(self) -> _Transaction:
        return _Transaction(self._connect())

    def _fetchone(self, sql: str, params: tuple[Any, ...]) -> sqlite3.Row | None:
        con = self._connect()
        try:
            return con.execute(sql, params).fetchone()  # type: ignore[no-any-return]
        finally:
            con.close()

    def _fetchall(self, sql: str, params: tuple[Any, ...]) -> list[sqlite3.Row]:
        con = self._connect()
        try:
            return con.execute(sql, params).fetchall()
        finally:
            con.close()


class _Transaction:
    """Commit on success, roll back on error, always close the connection."""

    def __init__(self, con: sqlite3.Connection) -> None:
        self._con = con

    def __enter__(self) -> sqlite3.Connection:
        return self._con

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        try:
            if exc_type is None:
                self._con.commit()
            else:
                self._con.rollback()
        finally:
            self._con.close()
