"""Load the badge catalog from the packaged ``badges.yml``."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml

from whisperbadges.models import BadgeDefinition, BadgeScope, BadgeType

logger = logging.getLogger(__name__)

CATALOG_PATH = Path(__file__).with_name("badges.yml")


class CatalogError(Exception):
    """Raised when the badge catalog file is incomplete or malformed."""


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that refuses mappings with a repeated key."""

    def construct_mapping(self, node: yaml.MappingNode, deep: bool = False) -> dict[Any, Any]:
        seen: set[Any] = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in seen:
                raise CatalogError(f"Duplicate key in catalog: {key!r}")
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def parse_catalog(text: str) -> Mapping[BadgeType, BadgeDefinition]:
    """Parse catalog YAML into a read-only mapping keyed by badge type.

    Every :class:`BadgeType` must be defined exactly once; unknown and
    repeated keys are rejected.
    """
    cfg: dict[str, Any] = yaml.load(text, Loader=_UniqueKeyLoader) or {}
    raw: dict[str, Any] = cfg.get("badges", {}) or {}

    definitions: dict[BadgeType, BadgeDefinition] = {}
    for key, entry in raw.items():
        try:
            badge_type = BadgeType(key)
        except ValueError as exc:
            raise CatalogError(f"Unknown badge type in catalog: {key!r}") from exc
        definitions[badge_type] = BadgeDefinition(
            badge_type=badge_type,
            display_name=entry["name"],
            tagline=entry.get("tagline", ""),
            scope=BadgeScope(entry["scope"]),
        )

    missing = [b.value for b in BadgeType if b not in definitions]
    if missing:
        raise CatalogError(f"Catalog is missing badge types: {', '.join(missing)}")

    return MappingProxyType(definitions)


def load_catalog(path: Path = CATALOG_PATH) -> Mapping[BadgeType, BadgeDefinition]:
    catalog = parse_catalog(path.read_text(encoding="utf-8"))
    logger.debug("Loaded %d badge definitions", len(catalog))
    return catalog


BADGES: Mapping[BadgeType, BadgeDefinition] = load_catalog()


def get_definition(badge_type: str) -> BadgeDefinition | None:
    """Look up a definition by badge type; unknown types return None."""
    try:
        return BADGES[BadgeType(badge_type)]
    except ValueError:
        return None
