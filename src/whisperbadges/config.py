"""Centralised configuration loaded from environment variables and dotenv."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# ── Paths ──────────────────────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parents[2]
DB_PATH: Path = Path(
    os.getenv("WHISPERBADGES_DB", str(PROJECT_ROOT / "var" / "whisperbadges.sqlite3"))
)

# ── Notification bridge ────────────────────────────────────────────────────
NOTIFY_WEBHOOK_URL: str = os.getenv("NOTIFY_WEBHOOK_URL", "")
NOTIFY_TIMEOUT: float = float(os.getenv("NOTIFY_TIMEOUT", "10"))

# ── Sharing ────────────────────────────────────────────────────────────────
SHARE_LINK_TTL_DAYS: int = int(os.getenv("SHARE_LINK_TTL_DAYS", "7"))

# ── Logging ────────────────────────────────────────────────────────────────
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()


def notifications_enabled() -> bool:
    """Return True when a notification webhook is configured."""
    return bool(NOTIFY_WEBHOOK_URL)
