"""
Sefer Core - Shared types, config, database models, and schemas.

This package contains:
- Database models (SQLAlchemy)
- Database connection and session management
- Configuration settings
- Error types and logging setup
- Pydantic schemas for ingest, retrieval and the API
"""

from sefer_core.config import settings
from sefer_core.db import Base, engine, SessionLocal
from sefer_core.models import Document, Chunk, IndexEntry
from sefer_core.errors import (
    SeferError,
    IngestError,
    EmbeddingProviderError,
    RetrievalError,
    IndexBuildError,
)
from sefer_core.schemas import (
    DocumentPayload,
    SectionPayload,
    QueryAnalysis,
    SearchFilters,
    ChunkHit,
    RankedResult,
    RetrievalOutcome,
)

__all__ = [
    "settings",
    "Base",
    "engine",
    "SessionLocal",
    "Document",
    "Chunk",
    "IndexEntry",
    "SeferError",
    "IngestError",
    "EmbeddingProviderError",
    "RetrievalError",
    "IndexBuildError",
    "DocumentPayload",
    "SectionPayload",
    "QueryAnalysis",
    "SearchFilters",
    "ChunkHit",
    "RankedResult",
    "RetrievalOutcome",
]
