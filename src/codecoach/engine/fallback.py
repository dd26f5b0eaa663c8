"""YAML catalog of generic hints used when the hint service is unavailable."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

WILDCARD = "*"
SOLUTION_LEVEL = 4

DEFAULT_CATALOG = Path(__file__).parent.parent / "content" / "fallback_hints.yaml"


@dataclass
class FallbackEntry:
    language: str
    error_kind: str
    levels: dict[int, str] = field(default_factory=dict)


class FallbackHints:
    """Lookup of generic hints keyed by (language, error kind, level).

    Level 4 is the full solution and is never served from here, whatever the
    catalog contains.
    """

    def __init__(self, entries: Optional[list[FallbackEntry]] = None):
        self._index: dict[tuple[str, str], FallbackEntry] = {}
        for entry in entries or []:
            self._index[(entry.language.lower(), entry.error_kind)] = entry

    def __len__(self) -> int:
        return len(self._index)

    def lookup(self, language: str, error_kind: Optional[str], level: int) -> Optional[str]:
        if level >= SOLUTION_LEVEL or level < 1:
            return None
        language = (language or WILDCARD).lower()
        kind = error_kind or WILDCARD
        for key in ((language, kind), (language, WILDCARD), (WILDCARD, kind), (WILDCARD, WILDCARD)):
            entry = self._index.get(key)
            if entry and level in entry.levels:
                return entry.levels[level]
        return None


def _parse_entry(raw: dict) -> FallbackEntry:
    levels = {}
    for level, text in (raw.get("levels") or {}).items():
        level = int(level)
        if 1 <= level < SOLUTION_LEVEL and text:
            levels[level] = str(text).strip()
    return FallbackEntry(
        language=str(raw.get("language", WILDCARD)),
        error_kind=str(raw.get("errorKind", WILDCARD)),
        levels=levels,
    )


def load_fallback_hints(path: Optional[Path] = None) -> FallbackHints:
    """Load the fallback catalog; a missing file yields an empty catalog."""
    path = path or DEFAULT_CATALOG
    if not path.exists():
        return FallbackHints()
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return FallbackHints([_parse_entry(raw) for raw in data.get("hints", [])])
