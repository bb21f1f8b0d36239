"""Shared fixtures: a throwaway SQLite store and deterministic embedders."""

import os

# settings are read at import time; point them at test values first
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["EMBEDDING_DIM"] = "8"
os.environ["EMBEDDING_BACKEND"] = "local"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from sefer_core.db import Base
from sefer_core.models import Chunk, Document
from sefer_pipeline.utils.text_cleaning import estimate_tokens
from tests.fixtures.embedders import FakeEmbedder


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(f"sqlite:///{tmp_path / 'sefer_test.db'}")
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def add_document(db_session):
    def _add(name: str, title: str | None = None, hebrew_title: str | None = None) -> Document:
        doc = Document(name=name, title=title or name.replace("_", " "), hebrew_title=hebrew_title,
                       source_ref=name, total_chunks=0)
        db_session.add(doc)
        db_session.flush()
        return doc
    return _add


@pytest.fixture
def add_chunk(db_session):
    counter = {"n": 0}

    def _add(
        doc: Document,
        chunk_id: str,
        content: str,
        themes: list[str] | None = None,
        keywords: list[str] | None = None,
        embedding: list[float] | None = None,
        token_count: int | None = None,
        reference: str | None = None,
    ) -> Chunk:
        counter["n"] += 1
        chunk = Chunk(
            id=chunk_id,
            document_id=doc.id,
            chunk_index=counter["n"],
            content=content,
            exact_reference=reference or f"{doc.name}:{chunk_id}",
            token_count=estimate_tokens(content) if token_count is None else token_count,
            themes=themes or [],
            keywords=keywords or [],
            embedding=embedding,
        )
        db_session.add(chunk)
        db_session.flush()
        return chunk
    return _add
