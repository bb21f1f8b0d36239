"""Tests for query orchestration: concurrent streams, degradation and no-result outcomes."""

import threading
import time

import numpy as np
import pytest
from sqlalchemy.exc import OperationalError

from sefer_core.errors import RetrievalError
from sefer_core.schemas import QueryAnalysis
from sefer_pipeline.stage_00_embeddings import embedder as embedder_module
from sefer_pipeline.stage_00_embeddings.embedder import LocalEmbeddingProvider
from sefer_pipeline.stage_01_index.builder import rebuild_master_index
from sefer_pipeline.stage_01_index.cache import IndexCache
from sefer_pipeline.stage_02_retrieval.query_analysis import analyze_query
from sefer_pipeline.stage_02_retrieval.retriever import Retriever
from tests.fixtures.embedders import FailingEmbedder, FakeEmbedder

QUESTION = "What brings joy?"


def unit(*values):
    vec = np.zeros(8, dtype=np.float32)
    vec[: len(values)] = values
    return vec.tolist()


@pytest.fixture
def indexed_corpus(add_document, add_chunk, db_session):
    lm = add_document("Likutei_Moharan")
    sh = add_document("Sichot_HaRan")
    add_chunk(lm, "c1", "Joy is a great mitzvah.", themes=["joy", "mitzvah"], embedding=unit(1.0, 0.0), token_count=40)
    add_chunk(lm, "c2", "Speak to God alone each day.", themes=["hitbodedut"], embedding=unit(0.0, 1.0), token_count=40)
    add_chunk(sh, "c3", "Dance and sing with joy.", themes=["joy"], embedding=unit(0.6, 0.8), token_count=40)
    db_session.commit()
    rebuild_master_index(db_session)


@pytest.fixture
def query_embedder():
    return FakeEmbedder({QUESTION: unit(1.0, 0.0)})


def broken_session_factory():
    raise OperationalError("SELECT 1", {}, Exception("store down"))


def test_retrieve_fuses_all_streams(session_factory, indexed_corpus, query_embedder):
    retriever = Retriever(session_factory, query_embedder, IndexCache(), max_tokens=1000, max_chunks=20)
    outcome = retriever.retrieve(QUESTION, max_results=10)

    assert not outcome.no_results
    assert outcome.failed_streams == []
    assert outcome.analysis.themes == ["joy"]
    top = outcome.selected[0]
    assert top.chunk.id == "c1"
    assert top.sources == ["vector", "master", "theme"]
    assert top.score == pytest.approx(1.0 + 0.3 + 0.2)
    assert outcome.total_tokens == sum(r.chunk.token_count for r in outcome.selected)


def test_vector_failure_degrades_to_other_streams(session_factory, indexed_corpus):
    retriever = Retriever(session_factory, FailingEmbedder(), IndexCache())
    outcome = retriever.retrieve(QUESTION)

    assert outcome.failed_streams == ["vector"]
    assert {r.chunk.id for r in outcome.selected} == {"c1", "c3"}
    assert all("vector" not in r.sources for r in outcome.selected)


def test_all_streams_failing_raises():
    retriever = Retriever(broken_session_factory, FailingEmbedder())

    with pytest.raises(RetrievalError) as exc_info:
        retriever.retrieve(QUESTION)
    assert set(exc_info.value.failures) == {"vector", "master", "theme"}


def test_no_match_is_an_outcome_not_an_error(session_factory, query_embedder):
    outcome = Retriever(session_factory, query_embedder).retrieve("xyzzy plugh")

    assert outcome.no_results
    assert outcome.selected == []
    assert outcome.suggestions


def test_selection_honours_chunk_cap(session_factory, indexed_corpus, query_embedder):
    retriever = Retriever(session_factory, query_embedder, max_tokens=1000, max_chunks=1)
    outcome = retriever.retrieve(QUESTION)

    assert len(outcome.selected) == 1
    assert outcome.total_candidates >= 2


def test_supplied_analysis_is_used(session_factory, indexed_corpus, query_embedder):
    analysis = QueryAnalysis(themes=["hitbodedut"], search_query=QUESTION)
    outcome = Retriever(session_factory, query_embedder).retrieve(QUESTION, analysis=analysis)

    assert outcome.analysis == analysis
    c2 = next(r for r in outcome.selected if r.chunk.id == "c2")
    assert "master" in c2.sources and "theme" in c2.sources


def test_search_modes(session_factory, indexed_corpus, query_embedder):
    retriever = Retriever(session_factory, query_embedder)

    semantic = retriever.search(QUESTION, books=["Sichot_HaRan"], limit=5)
    assert [h.id for h in semantic] == ["c3"]

    keyword = retriever.search("dance joy", search_type="keyword")
    assert keyword[0].id == "c3"


def test_analyze_query_detects_books_and_type():
    books = [("Likutei_Moharan", "Likutei Moharan"), ("Sichot_HaRan", "Sichot HaRan")]

    reference = analyze_query("What does Likutei Moharan 2:24 say?", books=books)
    assert reference.query_type == "reference"
    assert reference.suspected_books == ["Likutei_Moharan"]

    bio = analyze_query("Where was Rebbe Nachman born?", books=books)
    assert bio.query_type == "biographical"

    teaching = analyze_query("How do I find emunah in hard times?", concept_vocabulary=["times"])
    assert teaching.query_type == "teaching"
    assert teaching.themes == ["faith"]
    assert teaching.hebrew_themes == ["אמונה"]
    assert teaching.key_terms == ["times"]


def test_unreachable_local_model_degrades_vector_stream(monkeypatch, session_factory, indexed_corpus):
    def offline(*args, **kwargs):
        raise OSError("We couldn't connect to 'https://huggingface.co' to load this model")

    monkeypatch.setattr(embedder_module, "SentenceTransformer", offline)
    retriever = Retriever(session_factory, LocalEmbeddingProvider(), IndexCache())
    outcome = retriever.retrieve(QUESTION)

    assert outcome.failed_streams == ["vector"]
    assert {r.chunk.id for r in outcome.selected} == {"c1", "c3"}


class BrokenEmbedder:
    dimension = 8

    def embed(self, text):
        raise KeyError("data")

    def embed_many(self, texts):
        raise KeyError("data")


def test_unexpected_stream_error_only_fails_that_stream(session_factory, indexed_corpus):
    outcome = Retriever(session_factory, BrokenEmbedder()).retrieve(QUESTION)

    assert outcome.failed_streams == ["vector"]
    assert outcome.selected


def test_streams_share_one_deadline(session_factory):
    release = threading.Event()

    def stuck(session):
        release.wait(5)
        return []

    retriever = Retriever(session_factory, FakeEmbedder(), stream_timeout=0.3)
    started = time.monotonic()
    try:
        results, failures = retriever.run_streams({"a": stuck, "b": stuck, "c": lambda s: []})
    finally:
        release.set()
    elapsed = time.monotonic() - started

    assert set(failures) == {"a", "b"}
    assert results == {"a": [], "b": [], "c": []}
    assert elapsed < 0.55
