"""Share-chain ancestry: depth derivation and parent-pointer walks."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Collection

from whisperbadges.models import ShareLink
from whisperbadges.store import BadgeStore

logger = logging.getLogger(__name__)


def chain_depth(parent: ShareLink | None) -> int:
    """Depth of a new link re-shared from *parent* (0 for a first-hand share)."""
    if parent is None:
        return 0
    return parent.share_chain_depth + 1


async def is_ancestor(
    store: BadgeStore, link_id: str | None, target_ids: Collection[str]
) -> bool:
    """Return True if *link_id* or any link above it is in *target_ids*.

    Walks ``parent_link_id`` one fetch per level. A missing link ends the walk
    with False; so does a revisited id, since the parent pointers are meant to
    form a forest and a cycle can never reach a new ancestor.
    """
    visited: set[str] = set()
    current = link_id
    while current is not None:
        if current in target_ids:
            return True
        if current in visited:
            logger.warning("Share-link cycle detected at %s; treating as no ancestor", current)
            return False
        visited.add(current)

        link = await asyncio.to_thread(store.get_share_link, current)
        if link is None:
            return False
        current = link.parent_link_id
    return False
