# context/semantic_cache.py
"""Cache for assembled context fragments, invalidated by state version."""

from __future__ import annotations

import hashlib
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

import structlog
from config import settings

logger = structlog.get_logger(__name__)

CacheEntryType = Literal[
    "character_context",
    "plot_context",
    "timeline_context",
    "narrative_guide",
    "rolling_summary",
    "bible_compressed",
    "full_context",
]


@dataclass
class CacheEntry:
    type: str
    content: str
    chapter_index: int
    state_version: int
    created_at: float
    ttl: float
    content_hash: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl


def compute_state_version(
    character_chapter: int, plot_chapter: int, summary_chapter: int
) -> int:
    """Composite version: any upstream update yields a different number."""
    return character_chapter * 10000 + plot_chapter * 100 + summary_chapter


class ContextCache:
    """Process-local cache of context fragments.

    Entries are keyed by ``project_id:type:chapter_index``. Reads drop entries
    that have outlived their TTL or carry a different state version. Writes
    first sweep expired entries, then evict the single oldest entry when full.
    """

    def __init__(
        self,
        max_size: int = settings.CONTEXT_CACHE_SIZE,
        default_ttl: float = settings.CONTEXT_CACHE_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._clock = clock
        self._data: dict[str, CacheEntry] = {}
        self.hits = 0
        self.misses = 0

    @staticmethod
    def _key(project_id: str, entry_type: str, chapter_index: int) -> str:
        return f"{project_id}:{entry_type}:{chapter_index}"

    def __len__(self) -> int:
        return len(self._data)

    def set(
        self,
        project_id: str,
        entry_type: CacheEntryType,
        chapter_index: int,
        content: str,
        state_version: int,
        metadata: dict[str, Any] | None = None,
        ttl: float | None = None,
    ) -> None:
        self.cleanup()
        key = self._key(project_id, entry_type, chapter_index)
        if key not in self._data and len(self._data) >= self.max_size:
            oldest_key = min(self._data, key=lambda k: self._data[k].created_at)
            del self._data[oldest_key]
            logger.debug("Context cache evicted oldest entry.", key=oldest_key)

        self._data[key] = CacheEntry(
            type=entry_type,
            content=content,
            chapter_index=chapter_index,
            state_version=state_version,
            created_at=self._clock(),
            ttl=ttl if ttl is not None else self.default_ttl,
            content_hash=hashlib.sha1(content.encode("utf-8")).hexdigest()[:16],
            metadata=dict(metadata or {}),
        )

    def get(
        self,
        project_id: str,
        entry_type: CacheEntryType,
        chapter_index: int,
        current_state_version: int,
    ) -> CacheEntry | None:
        key = self._key(project_id, entry_type, chapter_index)
        entry = self._data.get(key)
        if entry is None:
            self.misses += 1
            return None
        if entry.expired(self._clock()) or entry.state_version != current_state_version:
            del self._data[key]
            self.misses += 1
            return None
        self.hits += 1
        return entry

    def is_valid(
        self,
        project_id: str,
        entry_type: CacheEntryType,
        chapter_index: int,
        current_state_version: int,
    ) -> bool:
        return (
            self.get(project_id, entry_type, chapter_index, current_state_version)
            is not None
        )

    def invalidate_project(self, project_id: str) -> int:
        prefix = f"{project_id}:"
        doomed = [k for k in self._data if k.startswith(prefix)]
        for key in doomed:
            del self._data[key]
        return len(doomed)

    def invalidate_from_chapter(self, project_id: str, from_chapter: int) -> int:
        prefix = f"{project_id}:"
        doomed = [
            k
            for k, entry in self._data.items()
            if k.startswith(prefix) and entry.chapter_index >= from_chapter
        ]
        for key in doomed:
            del self._data[key]
        return len(doomed)

    def cleanup(self) -> int:
        now = self._clock()
        doomed = [k for k, entry in self._data.items() if entry.expired(now)]
        for key in doomed:
            del self._data[key]
        return len(doomed)

    def clear(self) -> None:
        self._data.clear()

    def stats(self) -> dict[str, Any]:
        by_type: dict[str, int] = {}
        for entry in self._data.values():
            by_type[entry.type] = by_type.get(entry.type, 0) + 1
        return {
            "size": len(self._data),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "by_type": by_type,
        }
