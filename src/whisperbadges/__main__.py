"""CLI entry-point: ``python -m whisperbadges evaluate`` / ``badges`` / ``catalog``."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from whisperbadges import config
from whisperbadges.catalog import BADGES
from whisperbadges.dispatcher import BadgeEngine, TriggerKind
from whisperbadges.history import badges_since, group_by_type, user_badges
from whisperbadges.models import AwardedBadge
from whisperbadges.notifications import build_bridge
from whisperbadges.store import BadgeStore

logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


async def _evaluate(
    store: BadgeStore, kind: str, actor_id: str, story_id: str | None
) -> list[AwardedBadge]:
    engine = BadgeEngine(store, build_bridge())
    awarded = await engine.evaluate(kind, actor_id, story_id)
    await engine.drain()
    return awarded


def _print_json(data: object) -> None:
    json.dump(data, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="whisperbadges",
        description="Badge eligibility engine for shared stories.",
    )
    parser.add_argument(
        "--db",
        type=Path,
        default=config.DB_PATH,
        help=f"SQLite database path (default: {config.DB_PATH}).",
    )
    sub = parser.add_subparsers(dest="command")

    # ── init-db ────────────────────────────────────────────────────────
    sub.add_parser("init-db", help="Create the database schema.")

    # ── catalog ────────────────────────────────────────────────────────
    sub.add_parser("catalog", help="Print the badge catalog.")

    # ── evaluate ───────────────────────────────────────────────────────
    eval_parser = sub.add_parser("evaluate", help="Run badge rules for one event.")
    eval_parser.add_argument(
        "--event",
        required=True,
        choices=[k.value for k in TriggerKind],
        help="Kind of event that just happened.",
    )
    eval_parser.add_argument("--actor", required=True, help="User who triggered it.")
    eval_parser.add_argument("--story", default=None, help="Story involved, if any.")

    # ── badges ─────────────────────────────────────────────────────────
    badges_parser = sub.add_parser("badges", help="List a user's earned badges.")
    badges_parser.add_argument("--user", required=True)
    badges_parser.add_argument(
        "--since",
        default=None,
        help="Only badges earned after this ISO timestamp (with UTC offset).",
    )

    args = parser.parse_args(argv)
    _setup_logging()

    if args.command == "init-db":
        BadgeStore(args.db)
        logger.info("Schema ready at %s", args.db)
    elif args.command == "catalog":
        _print_json({str(k): d.model_dump(mode="json") for k, d in BADGES.items()})
    elif args.command == "evaluate":
        store = BadgeStore(args.db)
        awarded = asyncio.run(_evaluate(store, args.event, args.actor, args.story))
        _print_json([b.model_dump(mode="json") for b in awarded])
    elif args.command == "badges":
        store = BadgeStore(args.db)
        try:
            if args.since:
                summaries = badges_since(store, args.user, args.since)
            else:
                summaries = user_badges(store, args.user)
        except ValueError as exc:
            logger.error("Invalid --since: %s", exc)
            sys.exit(2)
        _print_json(
            {
                "badges": [s.model_dump(mode="json") for s in summaries],
                "grouped": {
                    k: [s.model_dump(mode="json") for s in v]
                    for k, v in group_by_type(summaries).items()
                },
                "total_count": len(summaries),
            }
        )
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
