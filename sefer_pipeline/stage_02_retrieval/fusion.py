"""
Result fusion: merge the vector, master-index and theme streams into one
ranked list, then pick the subset that fits the context budget.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from sefer_core.config import settings
from sefer_core.schemas import ChunkHit, QueryAnalysis, RankedResult


@dataclass(frozen=True)
class FusionWeights:
    """Empirical constants; validated only by the retrieval tests."""
    vector_weight: float = 1.0
    master_boost: float = 0.3
    master_base: float = 0.7
    theme_boost: float = 0.2
    theme_base: float = 0.5

    @classmethod
    def from_settings(cls) -> "FusionWeights":
        return cls(
            vector_weight=settings.FUSION_VECTOR_WEIGHT,
            master_boost=settings.FUSION_MASTER_BOOST,
            master_base=settings.FUSION_MASTER_BASE,
            theme_boost=settings.FUSION_THEME_BOOST,
            theme_base=settings.FUSION_THEME_BASE,
        )


def _unique(hits: Iterable[ChunkHit]) -> list[ChunkHit]:
    seen: set[str] = set()
    out = []
    for hit in hits:
        if hit.id not in seen:
            seen.add(hit.id)
            out.append(hit)
    return out


def _merge(combined: dict[str, RankedResult], hits: Iterable[ChunkHit], source: str, boost: float, base: float):
    for hit in _unique(hits):
        existing = combined.get(hit.id)
        if existing is not None:
            existing.score += boost
            existing.sources.append(source)
        else:
            combined[hit.id] = RankedResult(chunk=hit, score=base, sources=[source])


def combine_search_results(
    vector_results: Iterable[ChunkHit],
    master_results: Iterable[ChunkHit],
    theme_results: Iterable[ChunkHit],
    weights: FusionWeights | None = None,
) -> list[RankedResult]:
    """
    Priority-weighted union of the three streams.

    Vector hits keep their similarity score. A master-index hit boosts a chunk
    already present or enters at a lower base score; theme hits likewise with
    a smaller boost and base. Each stream counts once per chunk. Sorted by
    score descending, ties by chunk id.
    """
    weights = weights or FusionWeights.from_settings()
    combined: dict[str, RankedResult] = {}
    for hit in _unique(vector_results):
        combined[hit.id] = RankedResult(chunk=hit, score=hit.score * weights.vector_weight, sources=["vector"])
    _merge(combined, master_results, "master", weights.master_boost, weights.master_base)
    _merge(combined, theme_results, "theme", weights.theme_boost, weights.theme_base)
    return sorted(combined.values(), key=lambda r: (-r.score, r.chunk.id))


def select_best_chunks(
    results: list[RankedResult],
    max_tokens: int | None = None,
    max_chunks: int | None = None,
) -> list[RankedResult]:
    """
    Walk the ranked list and keep chunks while the running token estimate
    stays within ``max_tokens``; stop at the first chunk that would exceed it
    or once ``max_chunks`` are selected.
    """
    max_tokens = settings.MAX_CONTEXT_TOKENS if max_tokens is None else max_tokens
    max_chunks = settings.MAX_CONTEXT_CHUNKS if max_chunks is None else max_chunks
    selected: list[RankedResult] = []
    total = 0
    for result in results:
        if len(selected) >= max_chunks:
            break
        tokens = result.chunk.token_count or 0
        if total + tokens > max_tokens:
            break
        selected.append(result)
        total += tokens
    return selected


def generate_suggestions(analysis: QueryAnalysis | None) -> list[str]:
    """Hints for a query that found nothing."""
    suggestions = []
    if analysis is not None:
        if analysis.suspected_books:
            suggestions.append(f"Try searching within {analysis.suspected_books[0]}")
        if analysis.themes:
            suggestions.append(f"Look for teachings on: {', '.join(analysis.themes)}")
    suggestions.append("Rephrase the question with more general terms")
    suggestions.append("Check the spelling of names and Hebrew terms")
    return suggestions
