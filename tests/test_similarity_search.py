"""Tests for cosine similarity search (Stage 2)."""

import numpy as np
import pytest

from sefer_core.errors import EmbeddingProviderError
from sefer_core.schemas import SearchFilters
from sefer_pipeline.stage_02_retrieval.similarity_search import (
    SimilaritySearch,
    cosine_distances,
    rank_by_cosine,
)
from tests.fixtures.embedders import FailingEmbedder, FakeEmbedder


def unit(*values):
    vec = np.zeros(8, dtype=np.float32)
    vec[: len(values)] = values
    return vec.tolist()


@pytest.fixture
def vector_corpus(add_document, add_chunk, db_session):
    lm = add_document("Likutei_Moharan")
    sh = add_document("Sichot_HaRan")
    add_chunk(lm, "c1", "On joy.", themes=["joy"], embedding=unit(1.0, 0.0))
    add_chunk(lm, "c2", "On joy and prayer.", themes=["joy", "prayer"], embedding=unit(0.8, 0.6))
    add_chunk(sh, "c3", "On faith.", themes=["faith"], embedding=unit(0.0, 1.0))
    add_chunk(sh, "c4", "Not embedded yet.", themes=["joy"], embedding=None)
    db_session.commit()


@pytest.fixture
def query_embedder():
    return FakeEmbedder({"joy": unit(1.0, 0.0)})


def test_cosine_distances():
    matrix = np.array([[1.0, 0.0], [0.0, 1.0], [0.0, 0.0]])
    distances = cosine_distances([1.0, 0.0], matrix)

    assert distances.tolist() == pytest.approx([0.0, 1.0, 1.0])


def test_rank_by_cosine_orders_and_limits():
    matrix = np.array([[0.0, 1.0], [1.0, 0.0], [1.0, 0.0], [0.6, 0.8]])
    ranked = rank_by_cosine([1.0, 0.0], matrix, limit=3)

    assert [i for i, _ in ranked] == [1, 2, 3]
    assert ranked[2][1] == pytest.approx(0.4)


def test_rank_by_cosine_min_score():
    matrix = np.array([[1.0, 0.0], [0.6, 0.8], [0.0, 1.0]])
    ranked = rank_by_cosine([1.0, 0.0], matrix, limit=10, min_score=0.5)

    assert [i for i, _ in ranked] == [0, 1]


def test_zero_limit_returns_nothing(db_session, vector_corpus, query_embedder):
    matrix = np.array([[1.0, 0.0], [0.0, 1.0]])
    assert rank_by_cosine([1.0, 0.0], matrix, limit=0) == []
    assert rank_by_cosine([1.0, 0.0], matrix, limit=-1) == []
    assert SimilaritySearch(db_session, query_embedder).search("joy", limit=0) == []


def test_search_returns_nearest_first(db_session, vector_corpus, query_embedder):
    hits = SimilaritySearch(db_session, query_embedder).search("joy", limit=2)

    assert [h.id for h in hits] == ["c1", "c2"]
    assert hits[0].score == pytest.approx(1.0)
    assert hits[1].score == pytest.approx(0.8)
    assert hits[1].distance == pytest.approx(0.2)
    assert hits[0].book_title == "Likutei Moharan"


def test_search_skips_chunks_without_embeddings(db_session, vector_corpus, query_embedder):
    hits = SimilaritySearch(db_session, query_embedder).search("joy", limit=10)
    assert "c4" not in [h.id for h in hits]
    assert len(hits) == 3


def test_search_filters(db_session, vector_corpus, query_embedder):
    search = SimilaritySearch(db_session, query_embedder)

    by_book = search.search("joy", 10, SearchFilters(books=["Sichot_HaRan"]))
    assert [h.id for h in by_book] == ["c3"]

    by_theme = search.search("joy", 10, SearchFilters(themes=["prayer", "faith"]))
    assert [h.id for h in by_theme] == ["c2", "c3"]

    thresholded = search.search("joy", 10, SearchFilters(min_score=0.9))
    assert [h.id for h in thresholded] == ["c1"]


def test_find_similar_chunks_excludes_source(db_session, vector_corpus, query_embedder):
    hits = SimilaritySearch(db_session, query_embedder).find_similar_chunks("c1", limit=1)
    assert [h.id for h in hits] == ["c2"]


def test_provider_failure_propagates(db_session, vector_corpus):
    with pytest.raises(EmbeddingProviderError):
        SimilaritySearch(db_session, FailingEmbedder()).search("joy")
