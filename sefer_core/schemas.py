from typing import Any, Literal

from pydantic import BaseModel, Field


# ---------- ingest payloads ----------

class SectionPayload(BaseModel):
    """One structural section of a source text. ``he``/``text`` may be a string or a list of paragraphs."""
    index: int | None = None
    he: list[str] | str | None = None
    text: list[str] | str | None = None
    ref: str | None = None
    title: str | None = None


class DocumentPayload(BaseModel):
    name: str
    title: str
    hebrew_title: str | None = None
    category: str | None = None
    ref: str | None = None
    sections: list[SectionPayload] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class IngestRequest(BaseModel):
    document: DocumentPayload
    chunk_size: int | None = None
    overlap_percentage: int | None = None


class IngestResult(BaseModel):
    document_id: int | None
    name: str
    num_chunks: int
    skipped: bool = False
    reason: str | None = None


# ---------- retrieval ----------

class QueryAnalysis(BaseModel):
    """Routing hints for one question: detected themes, books and key terms."""
    themes: list[str] = Field(default_factory=list)
    hebrew_themes: list[str] = Field(default_factory=list)
    suspected_books: list[str] = Field(default_factory=list)
    key_terms: list[str] = Field(default_factory=list)
    query_type: str = "teaching"
    search_query: str = ""


class SearchFilters(BaseModel):
    books: list[str] = Field(default_factory=list)
    themes: list[str] = Field(default_factory=list)
    min_score: float | None = None


class ChunkHit(BaseModel):
    """A chunk as returned by any retrieval stream."""
    id: str
    content: str
    hebrew_text: str | None = None
    exact_reference: str
    section_title: str | None = None
    token_count: int = 0
    chunk_summary: str | None = None
    themes: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    book_title: str | None = None
    score: float = 0.0
    distance: float | None = None


class RankedResult(BaseModel):
    chunk: ChunkHit
    score: float
    sources: list[Literal["vector", "master", "theme"]] = Field(default_factory=list)


class RetrievalOutcome(BaseModel):
    selected: list[RankedResult] = Field(default_factory=list)
    total_candidates: int = 0
    total_tokens: int = 0
    failed_streams: list[str] = Field(default_factory=list)
    no_results: bool = False
    suggestions: list[str] = Field(default_factory=list)
    analysis: QueryAnalysis | None = None


# ---------- API ----------

class RetrieveRequest(BaseModel):
    question: str = Field(..., min_length=2)
    max_results: int = Field(10, ge=1, le=100)
    analysis: QueryAnalysis | None = None


class SearchRequest(BaseModel):
    query: str = Field(..., min_length=2)
    books: list[str] = Field(default_factory=list)
    themes: list[str] = Field(default_factory=list)
    search_type: Literal["semantic", "keyword"] = "semantic"
    limit: int = Field(20, ge=1, le=100)


class SearchResponseItem(BaseModel):
    id: str
    reference: str
    snippet: str
    score: float
    book: str | None = None
    themes: list[str] = Field(default_factory=list)


class BookSummary(BaseModel):
    id: int
    name: str
    title: str
    hebrew_title: str | None = None
    category: str | None = None
    total_chunks: int
    popular_themes: list[str] = Field(default_factory=list)


class ThemeSummary(BaseModel):
    name: str
    hebrew: str | None = None
    frequency: int
    books: list[str] = Field(default_factory=list)
    importance: float


class RebuildResult(BaseModel):
    themes: int
    concepts: int
    books: int
