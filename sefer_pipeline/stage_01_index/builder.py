"""
Master index builder.

Scans the full chunk set and produces one routing record per distinct theme,
per distinct keyword (concept) and per document (book alias). The table is
replaced wholesale inside one transaction, so readers see either the old or
the new index.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sefer_core.errors import IndexBuildError
from sefer_core.models import (
    Chunk,
    Document,
    IndexEntry,
    INDEX_TYPE_BOOK,
    INDEX_TYPE_CONCEPT,
    INDEX_TYPE_THEME,
)
from sefer_core.schemas import RebuildResult
from sefer_pipeline.stage_00_ingestion.analysis import hebrew_equivalent

logger = logging.getLogger(__name__)

FREQUENCY_SATURATION = 10
DOCUMENT_SATURATION = 5
FREQUENCY_WEIGHT = 0.7
SPREAD_WEIGHT = 0.3


@dataclass(frozen=True)
class IndexableChunk:
    id: str
    book_name: str
    book_title: str
    themes: tuple[str, ...] = ()
    keywords: tuple[str, ...] = ()
    hebrew_title: str | None = None


@dataclass
class IndexRecord:
    """Detached copy of an index entry; used for build output and the in-memory cache."""
    index_type: str
    key_term: str
    hebrew_term: str | None
    related_chunks: list[str]
    book_references: list[str]
    frequency: int
    importance_score: float
    cross_references: dict = field(default_factory=dict)

    @classmethod
    def from_entry(cls, entry: IndexEntry) -> "IndexRecord":
        return cls(
            index_type=entry.index_type,
            key_term=entry.key_term,
            hebrew_term=entry.hebrew_term,
            related_chunks=list(entry.related_chunks or []),
            book_references=list(entry.book_references or []),
            frequency=entry.frequency,
            importance_score=entry.importance_score,
            cross_references=dict(entry.cross_references or {}),
        )

    def to_entry(self) -> IndexEntry:
        return IndexEntry(
            index_type=self.index_type,
            key_term=self.key_term,
            hebrew_term=self.hebrew_term,
            related_chunks=list(self.related_chunks),
            book_references=list(self.book_references),
            frequency=self.frequency,
            importance_score=self.importance_score,
            cross_references=dict(self.cross_references),
        )


def calculate_importance_score(frequency: int, document_count: int) -> float:
    """
    Weight a term by how often it occurs and across how many documents.

    0.7 * min(frequency / 10, 1) + 0.3 * min(documents / 5, 1), clamped to [0, 1].
    A term spread across documents outranks one repeated inside a single source.
    """
    frequency_score = min(max(frequency, 0) / FREQUENCY_SATURATION, 1.0)
    spread_score = min(max(document_count, 0) / DOCUMENT_SATURATION, 1.0)
    return max(0.0, min(1.0, FREQUENCY_WEIGHT * frequency_score + SPREAD_WEIGHT * spread_score))


class _TermStats:
    __slots__ = ("chunks", "books", "frequency")

    def __init__(self):
        self.chunks: list[str] = []
        self.books: set[str] = set()
        self.frequency = 0


def _accumulate(stats: dict[str, _TermStats], terms: Iterable[str], chunk: IndexableChunk) -> None:
    for term in dict.fromkeys(t.strip() for t in terms if t and t.strip()):
        entry = stats.setdefault(term, _TermStats())
        entry.chunks.append(chunk.id)
        entry.books.add(chunk.book_title)
        entry.frequency += 1


def _records(index_type: str, stats: dict[str, _TermStats]) -> list[IndexRecord]:
    return [
        IndexRecord(
            index_type=index_type,
            key_term=term,
            hebrew_term=hebrew_equivalent(term),
            related_chunks=data.chunks,
            book_references=sorted(data.books),
            frequency=data.frequency,
            importance_score=calculate_importance_score(data.frequency, len(data.books)),
        )
        for term, data in sorted(stats.items())
    ]


def build_index_entries(chunks: Iterable[IndexableChunk]) -> list[IndexRecord]:
    """
    Compute the full set of index records for a chunk set.

    Pure and deterministic: the same chunks in the same order give the same
    records, so rebuilding an unchanged corpus is idempotent.
    """
    themes: dict[str, _TermStats] = {}
    keywords: dict[str, _TermStats] = {}
    books: dict[str, _TermStats] = {}
    book_meta: dict[str, IndexableChunk] = {}

    for chunk in chunks:
        _accumulate(themes, chunk.themes, chunk)
        _accumulate(keywords, chunk.keywords, chunk)
        _accumulate(books, [chunk.book_name], chunk)
        book_meta.setdefault(chunk.book_name, chunk)

    records = _records(INDEX_TYPE_THEME, themes) + _records(INDEX_TYPE_CONCEPT, keywords)
    for record in _records(INDEX_TYPE_BOOK, books):
        meta = book_meta[record.key_term]
        record.hebrew_term = meta.hebrew_title
        record.cross_references = {"title": meta.book_title}
        records.append(record)
    return records


def load_indexable_chunks(session: Session) -> list[IndexableChunk]:
    stmt = (
        select(Chunk.id, Chunk.themes, Chunk.keywords, Document.name, Document.title, Document.hebrew_title)
        .join(Document, Document.id == Chunk.document_id)
        .order_by(Document.name, Chunk.chunk_index)
    )
    return [
        IndexableChunk(
            id=cid,
            book_name=name,
            book_title=title,
            themes=tuple(themes or ()),
            keywords=tuple(keywords or ()),
            hebrew_title=hebrew_title,
        )
        for cid, themes, keywords, name, title, hebrew_title in session.execute(stmt)
    ]


def replace_master_index(session: Session, records: list[IndexRecord]) -> None:
    """
    Swap the index table contents for ``records`` inside the current transaction.

    Nothing is visible to other sessions until the caller commits. On failure
    the transaction is rolled back and the previous index stays in place.
    """
    try:
        session.execute(delete(IndexEntry))
        session.add_all([r.to_entry() for r in records])
        session.flush()
    except SQLAlchemyError as e:
        session.rollback()
        raise IndexBuildError(f"Replacing master index failed: {e}") from e


def summarize(records: list[IndexRecord]) -> RebuildResult:
    counts = defaultdict(int)
    for r in records:
        counts[r.index_type] += 1
    return RebuildResult(
        themes=counts[INDEX_TYPE_THEME],
        concepts=counts[INDEX_TYPE_CONCEPT],
        books=counts[INDEX_TYPE_BOOK],
    )


def rebuild_master_index(session: Session, attempts: int = 2) -> RebuildResult:
    """
    Rebuild the master index from the current chunk set and commit it.

    The new index is computed completely before the old one is touched. A
    failed swap is retried from scratch up to ``attempts`` times.
    """
    last_error: IndexBuildError | None = None
    for attempt in range(1, attempts + 1):
        try:
            records = build_index_entries(load_indexable_chunks(session))
            replace_master_index(session, records)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            last_error = IndexBuildError(f"Master index rebuild failed: {e}")
        except IndexBuildError as e:
            last_error = e
        else:
            result = summarize(records)
            logger.info(
                "Master index built: %d themes, %d concepts, %d books",
                result.themes, result.concepts, result.books,
            )
            return result
        logger.warning("Master index rebuild attempt %d/%d failed: %s", attempt, attempts, last_error)
    raise last_error
