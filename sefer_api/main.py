import logging

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sefer_core.config import settings
from sefer_core.db import Base, SessionLocal, engine
from sefer_core.errors import EmbeddingProviderError, IndexBuildError, IngestError, RetrievalError
from sefer_core.logging_config import configure_logging
from sefer_core.schemas import (
    BookSummary,
    IngestRequest,
    IngestResult,
    RebuildResult,
    RetrievalOutcome,
    RetrieveRequest,
    SearchRequest,
    SearchResponseItem,
    ThemeSummary,
)
from sefer_api.crud import get_chunk_by_reference, get_chunk_context, get_search_stats, ingest_payload
from sefer_pipeline.stage_00_embeddings.embedder import EmbeddingProvider, get_embedding_provider
from sefer_pipeline.stage_00_ingestion.chunker import SemanticChunker
from sefer_pipeline.stage_01_index.builder import rebuild_master_index
from sefer_pipeline.stage_01_index.cache import IndexCache
from sefer_pipeline.stage_01_index.master_index import MasterIndex
from sefer_pipeline.stage_02_retrieval.retriever import Retriever
from sefer_pipeline.utils.hits import snippet

logger = logging.getLogger(__name__)

app = FastAPI(title="Sefer Retrieval API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_embedder(request: Request) -> EmbeddingProvider:
    return request.app.state.embedder


def get_cache(request: Request) -> IndexCache:
    return request.app.state.index_cache


def get_retriever(request: Request) -> Retriever:
    return Retriever(SessionLocal, request.app.state.embedder, request.app.state.index_cache)


@app.on_event("startup")
def startup():
    configure_logging(settings.LOG_LEVEL)
    Base.metadata.create_all(bind=engine)
    # one embedder and one index cache per process
    app.state.embedder = get_embedding_provider()
    app.state.index_cache = IndexCache()


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/query/retrieve", response_model=RetrievalOutcome)
def retrieve(payload: RetrieveRequest, retriever: Retriever = Depends(get_retriever)):
    """Fused, budget-limited context for a question. ``no_results`` is set when nothing matched."""
    try:
        return retriever.retrieve(payload.question, payload.max_results, payload.analysis)
    except RetrievalError as e:
        logger.error("Retrieval failed for %r: %s", payload.question, e.failures)
        raise HTTPException(status_code=503, detail="All retrieval sources are unavailable")


@app.post("/query/search", response_model=list[SearchResponseItem])
def search(payload: SearchRequest, retriever: Retriever = Depends(get_retriever)):
    try:
        hits = retriever.search(payload.query, payload.books, payload.themes, payload.search_type, payload.limit)
    except EmbeddingProviderError as e:
        raise HTTPException(status_code=503, detail=f"Semantic search unavailable: {e}")
    return [
        SearchResponseItem(
            id=h.id,
            reference=h.exact_reference,
            snippet=snippet(h.content, 300),
            score=h.score,
            book=h.book_title,
            themes=h.themes,
        )
        for h in hits
    ]


@app.get("/query/books", response_model=list[BookSummary])
def books(db: Session = Depends(get_db), cache: IndexCache = Depends(get_cache)):
    return MasterIndex(db, cache).get_available_books()


@app.get("/query/themes", response_model=list[ThemeSummary])
def themes(limit: int = Query(20, ge=1, le=200), db: Session = Depends(get_db),
           cache: IndexCache = Depends(get_cache)):
    return MasterIndex(db, cache).get_popular_themes(limit)


@app.get("/query/chunk/{reference:path}")
def chunk_by_reference(reference: str, include_context: bool = False, db: Session = Depends(get_db)):
    hit = get_chunk_by_reference(db, reference)
    if hit is None:
        raise HTTPException(status_code=404, detail=f"Chunk not found: {reference}")
    context = get_chunk_context(db, hit.id) if include_context else None
    return {"chunk": hit.model_dump(exclude={"score", "distance"}), "context": context}


@app.get("/query/stats")
def stats(db: Session = Depends(get_db)):
    return get_search_stats(db)


@app.post("/ingest", response_model=IngestResult)
def ingest(payload: IngestRequest, db: Session = Depends(get_db),
           embedder: EmbeddingProvider = Depends(get_embedder)):
    chunker = SemanticChunker(payload.chunk_size, payload.overlap_percentage)
    try:
        return ingest_payload(db, payload.document, chunker, embedder)
    except IngestError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except EmbeddingProviderError as e:
        raise HTTPException(status_code=503, detail=f"Embedding failed: {e}")


@app.post("/admin/rebuild-index", response_model=RebuildResult)
def rebuild_index(db: Session = Depends(get_db), cache: IndexCache = Depends(get_cache)):
    try:
        result = rebuild_master_index(db)
    except (IndexBuildError, SQLAlchemyError) as e:
        raise HTTPException(status_code=500, detail=f"Index rebuild failed: {e}")
    cache.invalidate()
    return result
