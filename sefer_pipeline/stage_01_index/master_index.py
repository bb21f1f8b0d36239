"""
Master index lookups: term, theme and book routing to chunks.

Lookups raise on store errors; the retrieval layer decides whether a failed
stream degrades to zero results.
"""

from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from sefer_core.models import Chunk, Document, IndexEntry, INDEX_TYPE_CONCEPT, INDEX_TYPE_THEME
from sefer_core.schemas import BookSummary, ChunkHit, QueryAnalysis, ThemeSummary
from sefer_pipeline.stage_01_index.builder import IndexRecord
from sefer_pipeline.stage_01_index.cache import IndexCache
from sefer_pipeline.utils.hits import chunk_to_hit
from sefer_pipeline.utils.text_cleaning import words

logger = logging.getLogger(__name__)

# scores attached to routed chunks; routing is coarser than vector similarity
ROUTED_CHUNK_SCORE = 0.7
BOOK_ROUTE_SCORE = 0.4
BOOK_ROUTE_LIMIT = 50


def dedupe_hits(hits: Iterable[ChunkHit]) -> list[ChunkHit]:
    seen: set[str] = set()
    out = []
    for hit in hits:
        if hit.id not in seen:
            seen.add(hit.id)
            out.append(hit)
    return out


class MasterIndex:
    def __init__(self, session: Session, cache: IndexCache | None = None):
        self.session = session
        self.cache = cache

    # ---------- entries ----------

    def top_entries(self, limit: int) -> list[IndexRecord]:
        stmt = (
            select(IndexEntry)
            .order_by(IndexEntry.importance_score.desc(), IndexEntry.frequency.desc(), IndexEntry.key_term)
            .limit(limit)
        )
        return [IndexRecord.from_entry(e) for e in self.session.scalars(stmt)]

    def _cache_ready(self) -> bool:
        if self.cache is None:
            return False
        self.cache.ensure_fresh(self.top_entries)
        return self.cache.complete

    def find_entries(self, term: str, index_type: str | None = None) -> list[IndexRecord]:
        """Entries whose key contains ``term``, ranked by importance then frequency."""
        term = term.strip()
        if not term:
            return []
        if self._cache_ready():
            cached = self.cache.matching(term, index_type)
            if cached is not None:
                return cached
        stmt = select(IndexEntry).where(IndexEntry.key_term.icontains(term, autoescape=True))
        if index_type:
            stmt = stmt.where(IndexEntry.index_type == index_type)
        stmt = stmt.order_by(IndexEntry.importance_score.desc(), IndexEntry.frequency.desc(), IndexEntry.key_term)
        return [IndexRecord.from_entry(e) for e in self.session.scalars(stmt)]

    # ---------- chunk routing ----------

    def get_chunks_by_ids(self, chunk_ids: list[str], score: float = ROUTED_CHUNK_SCORE) -> list[ChunkHit]:
        """Materialize chunks in the given order. Ids of deleted chunks are skipped."""
        ids = list(dict.fromkeys(chunk_ids))
        if not ids:
            return []
        stmt = (
            select(Chunk, Document.title)
            .join(Document, Document.id == Chunk.document_id)
            .where(Chunk.id.in_(ids))
        )
        found = {chunk.id: chunk_to_hit(chunk, title, score) for chunk, title in self.session.execute(stmt)}
        missing = len(ids) - len(found)
        if missing:
            logger.debug("%d indexed chunk ids no longer exist", missing)
        return [found[cid] for cid in ids if cid in found]

    def search_by_term(self, term: str, index_type: str | None = None) -> list[ChunkHit]:
        chunk_ids: list[str] = []
        for record in self.find_entries(term, index_type):
            chunk_ids.extend(record.related_chunks)
        return self.get_chunks_by_ids(chunk_ids)

    def search_by_book(self, book_name: str, limit: int = BOOK_ROUTE_LIMIT) -> list[ChunkHit]:
        """Chunks of documents whose name, title or reference contains ``book_name``. Fixed low score."""
        book_name = book_name.strip()
        if not book_name:
            return []
        needle = book_name.replace(" ", "_")
        stmt = (
            select(Chunk, Document.title)
            .join(Document, Document.id == Chunk.document_id)
            .where(or_(
                Document.name.icontains(needle, autoescape=True),
                Document.title.icontains(book_name, autoescape=True),
                Document.source_ref.icontains(book_name, autoescape=True),
            ))
            .order_by(Document.name, Chunk.chunk_index)
            .limit(limit)
        )
        return [chunk_to_hit(chunk, title, BOOK_ROUTE_SCORE) for chunk, title in self.session.execute(stmt)]

    def search(self, analysis: QueryAnalysis) -> list[ChunkHit]:
        """Route a query through themes, suspected books and key terms."""
        hits: list[ChunkHit] = []
        for theme in analysis.themes:
            hits.extend(self.search_by_term(theme, INDEX_TYPE_THEME))
        for book in analysis.suspected_books:
            hits.extend(self.search_by_book(book))
        for term in analysis.key_terms:
            hits.extend(self.search_by_term(term, INDEX_TYPE_CONCEPT))
        unique = dedupe_hits(hits)
        unique.sort(key=lambda h: -h.score)
        return unique

    def search_by_themes(self, themes: list[str]) -> list[ChunkHit]:
        hits: list[ChunkHit] = []
        for theme in themes:
            hits.extend(self.search_by_term(theme, INDEX_TYPE_THEME))
        return dedupe_hits(hits)

    def keyword_search(
        self,
        query: str,
        books: list[str] | None = None,
        themes: list[str] | None = None,
        limit: int = 20,
    ) -> list[ChunkHit]:
        """
        Plain keyword search over chunk content.

        Score is the share of distinct query words found in the chunk.
        """
        terms = list(dict.fromkeys(w for w in words(query) if len(w) > 2))
        if not terms:
            return []
        stmt = (
            select(Chunk, Document.title)
            .join(Document, Document.id == Chunk.document_id)
            .where(or_(*[Chunk.content.icontains(t, autoescape=True) for t in terms]))
        )
        if books:
            stmt = stmt.where(or_(Document.title.in_(books), Document.name.in_(books)))
        wanted_themes = set(themes or [])
        out = []
        for chunk, title in self.session.execute(stmt):
            if wanted_themes and not wanted_themes.intersection(chunk.themes or []):
                continue
            content_words = set(words(chunk.content))
            score = sum(1 for t in terms if t in content_words) / len(terms)
            if score > 0:
                out.append(chunk_to_hit(chunk, title, score))
        out.sort(key=lambda h: (-h.score, h.id))
        return out[:limit]

    # ---------- catalog ----------

    def get_available_books(self) -> list[BookSummary]:
        stmt = (
            select(Document, func.count(Chunk.id))
            .outerjoin(Chunk, Chunk.document_id == Document.id)
            .group_by(Document.id)
            .order_by(Document.title)
        )
        books = []
        for doc, n_chunks in self.session.execute(stmt):
            theme_counts: dict[str, int] = {}
            for themes in self.session.scalars(select(Chunk.themes).where(Chunk.document_id == doc.id)):
                for t in themes or []:
                    theme_counts[t] = theme_counts.get(t, 0) + 1
            popular = sorted(theme_counts, key=lambda t: (-theme_counts[t], t))[:10]
            books.append(BookSummary(
                id=doc.id,
                name=doc.name,
                title=doc.title,
                hebrew_title=doc.hebrew_title,
                category=doc.category,
                total_chunks=n_chunks,
                popular_themes=popular,
            ))
        return books

    def get_popular_themes(self, limit: int = 20) -> list[ThemeSummary]:
        records = None
        if self._cache_ready():
            records = self.cache.top(INDEX_TYPE_THEME, limit)
        if records is None:
            stmt = (
                select(IndexEntry)
                .where(IndexEntry.index_type == INDEX_TYPE_THEME)
                .order_by(IndexEntry.importance_score.desc(), IndexEntry.frequency.desc(), IndexEntry.key_term)
                .limit(limit)
            )
            records = [IndexRecord.from_entry(e) for e in self.session.scalars(stmt)]
        return [
            ThemeSummary(
                name=r.key_term,
                hebrew=r.hebrew_term,
                frequency=r.frequency,
                books=r.book_references,
                importance=r.importance_score,
            )
            for r in records
        ]

    def vocabulary(self) -> tuple[list[str], list[str]]:
        """Known theme and concept terms, for query analysis."""
        rows = self.session.execute(
            select(IndexEntry.index_type, IndexEntry.key_term)
            .where(IndexEntry.index_type.in_((INDEX_TYPE_THEME, INDEX_TYPE_CONCEPT)))
        ).all()
        themes = sorted(t for kind, t in rows if kind == INDEX_TYPE_THEME)
        concepts = sorted(t for kind, t in rows if kind == INDEX_TYPE_CONCEPT)
        return themes, concepts
