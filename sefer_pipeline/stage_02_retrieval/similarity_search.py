"""
Nearest-neighbour search over chunk embeddings (cosine distance).

On postgres the ranking runs in SQL through pgvector's ``<=>`` operator.
Other backends load the filtered candidate embeddings and rank them with
numpy, which is adequate for a corpus of tens of thousands of chunks.
"""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np
from sqlalchemy import Float as SQLFloat, cast, or_, select, type_coerce
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Session

from sefer_core.models import Chunk, Document
from sefer_core.schemas import ChunkHit, SearchFilters
from sefer_pipeline.stage_00_embeddings.embedder import EmbeddingProvider
from sefer_pipeline.utils.hits import chunk_to_hit

logger = logging.getLogger(__name__)


def cosine_distances(query: Sequence[float], matrix: np.ndarray) -> np.ndarray:
    """1 - cosine similarity between ``query`` and each row; zero vectors are at distance 1."""
    q = np.asarray(query, dtype=np.float32)
    m = np.asarray(matrix, dtype=np.float32)
    if m.size == 0:
        return np.zeros(0, dtype=np.float32)
    norms = np.linalg.norm(m, axis=1) * np.linalg.norm(q)
    dots = m @ q
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(norms > 0, dots / norms, 0.0)
    return 1.0 - sims


def rank_by_cosine(
    query: Sequence[float],
    matrix: np.ndarray,
    limit: int,
    min_score: float | None = None,
) -> list[tuple[int, float]]:
    """Row indices and distances of the ``limit`` nearest rows, nearest first (ties by row order)."""
    if limit <= 0:
        return []
    distances = cosine_distances(query, matrix)
    order = np.argsort(distances, kind="stable")
    out = []
    for idx in order:
        d = float(distances[idx])
        if min_score is not None and 1.0 - d < min_score:
            break
        out.append((int(idx), d))
        if len(out) >= limit:
            break
    return out


class SimilaritySearch:
    def __init__(self, session: Session, embedder: EmbeddingProvider):
        self.session = session
        self.embedder = embedder

    @property
    def _use_pgvector(self) -> bool:
        return self.session.get_bind().dialect.name == "postgresql"

    def search(self, query: str, limit: int = 10, filters: SearchFilters | None = None) -> list[ChunkHit]:
        """
        Chunks nearest to ``query``.

        Raises:
            EmbeddingProviderError: if the query cannot be embedded.
        """
        filters = filters or SearchFilters()
        qvec = self.embedder.embed(query)
        return self.nearest(qvec, limit, filters)

    def find_similar_chunks(self, chunk_id: str, limit: int = 5) -> list[ChunkHit]:
        vec = self.session.scalar(select(Chunk.embedding).where(Chunk.id == chunk_id))
        if vec is None:
            return []
        return self.nearest(np.asarray(vec, dtype=np.float32).tolist(), limit, SearchFilters(), exclude_id=chunk_id)

    def nearest(
        self,
        qvec: list[float],
        limit: int,
        filters: SearchFilters,
        exclude_id: str | None = None,
    ) -> list[ChunkHit]:
        if limit <= 0:
            return []
        if self._use_pgvector:
            return self._nearest_pgvector(qvec, limit, filters, exclude_id)
        return self._nearest_in_memory(qvec, limit, filters, exclude_id)

    def _base_stmt(self, filters: SearchFilters, exclude_id: str | None, *columns):
        stmt = (
            select(Chunk, Document.title, *columns)
            .join(Document, Document.id == Chunk.document_id)
            .where(Chunk.embedding.is_not(None))
        )
        if filters.books:
            stmt = stmt.where(or_(Document.title.in_(filters.books), Document.name.in_(filters.books)))
        if exclude_id:
            stmt = stmt.where(Chunk.id != exclude_id)
        return stmt

    def _nearest_pgvector(self, qvec, limit, filters, exclude_id) -> list[ChunkHit]:
        # cosine distance operator: <=> (smaller = more similar)
        dist_raw = Chunk.embedding.op("<=>")(qvec)
        dist_expr = cast(dist_raw, SQLFloat).label("distance")
        stmt = self._base_stmt(filters, exclude_id, dist_expr)
        if filters.themes:
            themes_col = type_coerce(Chunk.themes, JSONB)
            stmt = stmt.where(or_(*[themes_col.contains([t]) for t in filters.themes]))
        if filters.min_score is not None:
            stmt = stmt.where(dist_raw <= 1.0 - filters.min_score)
        stmt = stmt.order_by(dist_raw.asc(), Chunk.id).limit(limit)

        out = []
        for chunk, title, dist in self.session.execute(stmt):
            d = float(dist if dist is not None else 1.0)
            out.append(chunk_to_hit(chunk, title, 1.0 - d, d))
        return out

    def _nearest_in_memory(self, qvec, limit, filters, exclude_id) -> list[ChunkHit]:
        wanted = set(filters.themes)
        candidates = [
            (chunk, title)
            for chunk, title in self.session.execute(self._base_stmt(filters, exclude_id).order_by(Chunk.id))
            if not wanted or wanted.intersection(chunk.themes or [])
        ]
        if not candidates:
            return []
        matrix = np.vstack([np.asarray(c.embedding, dtype=np.float32) for c, _ in candidates])
        return [
            chunk_to_hit(candidates[i][0], candidates[i][1], 1.0 - d, d)
            for i, d in rank_by_cosine(qvec, matrix, limit, filters.min_score)
        ]
