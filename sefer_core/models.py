from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    ForeignKey,
    DateTime,
    UniqueConstraint,
    Index,
    Float,
    func,
    JSON,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, Mapped, mapped_column
from pgvector.sqlalchemy import Vector

from sefer_core.config import settings
from sefer_core.db import Base

# JSONB on postgres so label arrays support containment filters
JSONList = JSON().with_variant(JSONB(), "postgresql")

INDEX_TYPE_THEME = "theme"
INDEX_TYPE_CONCEPT = "concept"
INDEX_TYPE_BOOK = "book"
INDEX_TYPES = (INDEX_TYPE_THEME, INDEX_TYPE_CONCEPT, INDEX_TYPE_BOOK)


class Document(Base):
    """A named source text (one book of the corpus)."""

    __tablename__ = "document"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), unique=True)   # stable routing key, e.g. "Likutei_Moharan"
    title: Mapped[str] = mapped_column(Text)
    hebrew_title: Mapped[str | None] = mapped_column(Text)
    source_ref: Mapped[str | None] = mapped_column(Text)          # base reference used for chunk references
    category: Mapped[str | None] = mapped_column(String(64))
    total_chunks: Mapped[int] = mapped_column(Integer, default=0)
    # open map; known keys: extraction_method, source_url, languages
    extra_metadata = Column(JSON, nullable=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[DateTime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    chunks: Mapped[list["Chunk"]] = relationship(
        back_populates="document", cascade="all, delete-orphan"
    )


class Chunk(Base):
    """Atomic retrievable unit; ``exact_reference`` is the citation key and never changes."""

    __tablename__ = "chunk"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    document_id: Mapped[int] = mapped_column(ForeignKey("document.id", ondelete="CASCADE"), index=True)
    chunk_index: Mapped[int] = mapped_column(Integer, index=True)
    section_index: Mapped[int] = mapped_column(Integer, default=0)
    content: Mapped[str] = mapped_column(Text)
    hebrew_text: Mapped[str | None] = mapped_column(Text)
    exact_reference: Mapped[str] = mapped_column(Text)
    section_title: Mapped[str | None] = mapped_column(Text)
    paragraph_number: Mapped[int | None] = mapped_column(Integer)
    token_count: Mapped[int] = mapped_column(Integer, default=0)
    chunk_summary: Mapped[str | None] = mapped_column(Text)
    themes = Column(JSONList, nullable=True)
    keywords = Column(JSONList, nullable=True)
    embedding = Column(Vector(settings.EMBEDDING_DIM), nullable=True)
    # open map; known keys: book_title, hebrew_title, category, is_complete_section, extraction_method
    extra_metadata = Column(JSON, nullable=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime, server_default=func.now())

    document: Mapped[Document] = relationship(back_populates="chunks")

    __table_args__ = (
        UniqueConstraint("exact_reference", name="uq_chunk_exact_reference"),
        Index("ix_chunk_document_order", "document_id", "chunk_index"),
        Index(
            "ix_chunk_embedding",
            "embedding",
            postgresql_using="hnsw",
            postgresql_ops={"embedding": "vector_cosine_ops"},
        ),
    )


class IndexEntry(Base):
    """Term-level routing record of the master index. Derived data, rebuilt wholesale."""

    __tablename__ = "master_index"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    index_type: Mapped[str] = mapped_column(String(16), index=True)
    key_term: Mapped[str] = mapped_column(Text)
    hebrew_term: Mapped[str | None] = mapped_column(Text)
    # weak references: ids may point at chunks deleted since the last rebuild
    related_chunks = Column(JSON, nullable=False, default=list)
    book_references = Column(JSON, nullable=False, default=list)
    frequency: Mapped[int] = mapped_column(Integer, default=1)
    importance_score: Mapped[float] = mapped_column(Float, default=0.5)
    cross_references = Column(JSON, nullable=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("key_term", "index_type", name="uq_master_index_term_type"),
        Index("ix_master_index_importance", "importance_score"),
    )
