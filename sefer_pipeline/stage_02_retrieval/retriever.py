"""
Query-time orchestration.

The three retrieval streams (vector, master index, theme) run concurrently,
each on its own session. A stream that fails contributes zero results; only
when all three fail does the query fail.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout, wait
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sefer_core.errors import RetrievalError
from sefer_core.models import Document
from sefer_core.schemas import ChunkHit, QueryAnalysis, RetrievalOutcome, SearchFilters
from sefer_pipeline.stage_00_embeddings.embedder import EmbeddingProvider
from sefer_pipeline.stage_01_index.cache import IndexCache
from sefer_pipeline.stage_01_index.master_index import MasterIndex
from sefer_pipeline.stage_02_retrieval.fusion import (
    FusionWeights,
    combine_search_results,
    generate_suggestions,
    select_best_chunks,
)
from sefer_pipeline.stage_02_retrieval.query_analysis import analyze_query
from sefer_pipeline.stage_02_retrieval.similarity_search import SimilaritySearch

logger = logging.getLogger(__name__)

STREAM_TIMEOUT_SECONDS = 30.0

StreamFn = Callable[[Session], list[ChunkHit]]


class Retriever:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        embedder: EmbeddingProvider,
        cache: IndexCache | None = None,
        weights: FusionWeights | None = None,
        max_tokens: int | None = None,
        max_chunks: int | None = None,
        stream_timeout: float = STREAM_TIMEOUT_SECONDS,
    ):
        self.session_factory = session_factory
        self.embedder = embedder
        self.cache = cache
        self.weights = weights or FusionWeights.from_settings()
        self.max_tokens = max_tokens
        self.max_chunks = max_chunks
        self.stream_timeout = stream_timeout

    def analyze(self, question: str) -> QueryAnalysis:
        """Analyze against the indexed vocabulary; the built-in lexicon alone if the store is unreachable."""
        try:
            with self.session_factory() as session:
                themes, concepts = MasterIndex(session, self.cache).vocabulary()
                books = session.execute(select(Document.name, Document.title)).all()
        except SQLAlchemyError as e:
            logger.warning("Query analysis without index vocabulary: %s", e)
            themes, concepts, books = [], [], []
        return analyze_query(question, themes, concepts, [(n, t) for n, t in books])

    def _run_stream(self, fn: StreamFn) -> list[ChunkHit]:
        with self.session_factory() as session:
            return fn(session)

    def run_streams(self, streams: dict[str, StreamFn]) -> tuple[dict[str, list[ChunkHit]], dict[str, Exception]]:
        """Run every stream under one shared deadline; a stream that raises or overruns yields no hits."""
        results: dict[str, list[ChunkHit]] = {}
        failures: dict[str, Exception] = {}
        pool = ThreadPoolExecutor(max_workers=len(streams), thread_name_prefix="retrieval")
        try:
            futures = {name: pool.submit(self._run_stream, fn) for name, fn in streams.items()}
            wait(futures.values(), timeout=self.stream_timeout)
            for name, future in futures.items():
                if not future.done():
                    future.cancel()
                    failures[name] = FutureTimeout(f"stream {name} exceeded {self.stream_timeout}s")
                    logger.warning("Retrieval stream %s timed out after %.1fs", name, self.stream_timeout)
                    results[name] = []
                    continue
                try:
                    results[name] = future.result()
                except Exception as e:
                    logger.warning("Retrieval stream %s failed: %s", name, e, exc_info=True)
                    failures[name] = e
                    results[name] = []
        finally:
            pool.shutdown(wait=False)
        return results, failures

    def retrieve(self, question: str, max_results: int = 10, analysis: QueryAnalysis | None = None) -> RetrievalOutcome:
        """
        Run all streams, fuse, and select a budget-limited context.

        Returns an outcome with ``no_results=True`` when nothing matched.

        Raises:
            RetrievalError: if every stream failed.
        """
        analysis = analysis or self.analyze(question)
        query_text = analysis.search_query or question
        cache = self.cache
        embedder = self.embedder

        streams: dict[str, StreamFn] = {
            "master": lambda s: MasterIndex(s, cache).search(analysis),
            "vector": lambda s: SimilaritySearch(s, embedder).search(query_text, max_results),
            "theme": lambda s: MasterIndex(s, cache).search_by_themes(analysis.themes),
        }
        results, failures = self.run_streams(streams)
        if len(failures) == len(streams):
            raise RetrievalError("All retrieval streams failed", failures)

        fused = combine_search_results(results["vector"], results["master"], results["theme"], self.weights)
        selected = select_best_chunks(fused, self.max_tokens, self.max_chunks)
        logger.info(
            "Query %r: %d candidates, %d selected, failed streams: %s",
            question[:80], len(fused), len(selected), sorted(failures) or "none",
        )
        return RetrievalOutcome(
            selected=selected,
            total_candidates=len(fused),
            total_tokens=sum(r.chunk.token_count for r in selected),
            failed_streams=sorted(failures),
            no_results=not selected,
            suggestions=generate_suggestions(analysis) if not selected else [],
            analysis=analysis,
        )

    def search(
        self,
        query: str,
        books: list[str] | None = None,
        themes: list[str] | None = None,
        search_type: str = "semantic",
        limit: int = 20,
    ) -> list[ChunkHit]:
        """Single-stream search used by the advanced search endpoint."""
        with self.session_factory() as session:
            if search_type == "semantic":
                filters = SearchFilters(books=books or [], themes=themes or [])
                return SimilaritySearch(session, self.embedder).search(query, limit, filters)
            return MasterIndex(session, self.cache).keyword_search(query, books, themes, limit)
