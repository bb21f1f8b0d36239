"""Time-limited in-memory snapshot of the highest-importance index entries."""

from __future__ import annotations

import threading
import time
from typing import Callable

from sefer_core.config import settings
from sefer_pipeline.stage_01_index.builder import IndexRecord

Loader = Callable[[int], list[IndexRecord]]


class IndexCache:
    """
    Holds the top ``max_entries`` entries by importance for ``ttl_seconds``.

    Built once per process and handed to whatever serves queries. A snapshot
    older than the TTL is never served; the next access reloads it. When the
    whole index fits in the snapshot the cache is *complete* and can answer
    partial-term lookups on its own; otherwise it only answers exact lookups
    and callers fall back to the store.
    """

    def __init__(
        self,
        ttl_seconds: float | None = None,
        max_entries: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = settings.INDEX_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self.max_entries = max_entries or settings.INDEX_CACHE_SIZE
        self.clock = clock
        self._entries: dict[tuple[str, str], IndexRecord] = {}
        self._loaded_at: float | None = None
        self._complete = False
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def complete(self) -> bool:
        return self._complete and not self.is_stale()

    def is_stale(self) -> bool:
        return self._loaded_at is None or self.clock() - self._loaded_at >= self.ttl_seconds

    def invalidate(self) -> None:
        with self._lock:
            self._entries = {}
            self._loaded_at = None
            self._complete = False

    def refresh(self, loader: Loader) -> None:
        """Reload from ``loader(n)``, which returns up to n entries ordered by importance."""
        records = loader(self.max_entries + 1)
        complete = len(records) <= self.max_entries
        entries = {
            (r.index_type, r.key_term): r
            for r in records[: self.max_entries]
        }
        with self._lock:
            self._entries = entries
            self._complete = complete
            self._loaded_at = self.clock()

    def ensure_fresh(self, loader: Loader) -> None:
        if self.is_stale():
            self.refresh(loader)

    def get(self, index_type: str, term: str) -> IndexRecord | None:
        if self.is_stale():
            return None
        return self._entries.get((index_type, term))

    def matching(self, term: str, index_type: str | None = None) -> list[IndexRecord] | None:
        """
        Entries whose key contains ``term`` (case-insensitive), ranked by
        importance then frequency. None when the cache cannot answer alone.
        """
        if not self.complete:
            return None
        needle = term.lower()
        hits = [
            r for (kind, key), r in self._entries.items()
            if needle in key.lower() and (index_type is None or kind == index_type)
        ]
        hits.sort(key=lambda r: (-r.importance_score, -r.frequency, r.key_term))
        return hits

    def top(self, index_type: str, limit: int) -> list[IndexRecord] | None:
        if not self.complete:
            return None
        hits = [r for (kind, _), r in self._entries.items() if kind == index_type]
        hits.sort(key=lambda r: (-r.importance_score, -r.frequency, r.key_term))
        return hits[:limit]
