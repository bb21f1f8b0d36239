import logging

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from sefer_core.errors import IngestError
from sefer_core.models import Chunk, Document
from sefer_core.schemas import ChunkHit, DocumentPayload, IngestResult
from sefer_pipeline.stage_00_embeddings.embedder import EmbeddingProvider
from sefer_pipeline.stage_00_ingestion.chunker import ChunkDraft, SemanticChunker
from sefer_pipeline.utils.hits import chunk_to_hit

logger = logging.getLogger(__name__)


def upsert_document(session: Session, payload: DocumentPayload) -> Document:
    doc = session.scalar(select(Document).where(Document.name == payload.name))
    if doc is None:
        doc = Document(name=payload.name, title=payload.title, total_chunks=0)
        session.add(doc)
    doc.title = payload.title
    doc.hebrew_title = payload.hebrew_title
    doc.category = payload.category
    doc.source_ref = payload.ref or payload.name
    doc.extra_metadata = dict(payload.metadata)
    session.flush()
    return doc


def _apply_derived(chunk: Chunk, draft: ChunkDraft) -> None:
    chunk.chunk_index = draft.chunk_index
    chunk.section_index = draft.section_index
    chunk.section_title = draft.section_title
    chunk.paragraph_number = draft.paragraph_number
    chunk.token_count = draft.token_count
    chunk.chunk_summary = draft.chunk_summary
    chunk.themes = list(draft.themes)
    chunk.keywords = list(draft.keywords)
    chunk.extra_metadata = dict(draft.metadata)


def store_chunks_batch(session: Session, document: Document, drafts: list[ChunkDraft],
                       embedder: EmbeddingProvider | None) -> list[str]:
    """
    Write one document's chunks. Keyed by chunk id (derived from the reference).

    - new chunk: inserted with a fresh embedding
    - same content: derived fields refreshed, embedding kept
    - changed content: content and embedding replaced together
    - chunks of the document no longer produced: removed

    Embeddings are computed before anything is written; the caller commits,
    so a failure leaves the document as it was. Without an embedder, new and
    changed chunks are stored with no embedding and picked up on a later run.
    """
    ids = [d.id for d in drafts]
    existing = {c.id: c for c in session.scalars(select(Chunk).where(Chunk.id.in_(ids)))} if ids else {}
    for cid, chunk in existing.items():
        if chunk.document_id != document.id:
            raise IngestError(f"reference of chunk {cid} already belongs to another document")

    to_embed = [
        d for d in drafts
        if d.id not in existing
        or existing[d.id].content != d.content
        or existing[d.id].embedding is None
    ]
    vecs = embedder.embed_many([d.content for d in to_embed]) if to_embed and embedder is not None else []
    new_vectors = {d.id: v.tolist() for d, v in zip(to_embed, vecs)}

    session.execute(
        delete(Chunk).where(Chunk.document_id == document.id, Chunk.id.not_in(ids))
    )
    for draft in drafts:
        chunk = existing.get(draft.id)
        if chunk is None:
            chunk = Chunk(
                id=draft.id,
                document_id=document.id,
                exact_reference=draft.exact_reference,
                content=draft.content,
                hebrew_text=draft.hebrew_text,
            )
            session.add(chunk)
        elif chunk.content != draft.content:
            logger.info("Content changed for %s, re-embedding", draft.exact_reference)
            chunk.content = draft.content
            chunk.hebrew_text = draft.hebrew_text
            chunk.embedding = None
        _apply_derived(chunk, draft)
        if draft.id in new_vectors:
            chunk.embedding = new_vectors[draft.id]
    document.total_chunks = len(drafts)
    session.flush()
    logger.info("Stored %d chunks for %s (%d embedded)", len(drafts), document.name, len(new_vectors))
    return ids


def ingest_payload(session: Session, payload: DocumentPayload, chunker: SemanticChunker,
                   embedder: EmbeddingProvider | None) -> IngestResult:
    drafts = chunker.chunk_document(payload)
    if not drafts:
        return IngestResult(document_id=None, name=payload.name, num_chunks=0, skipped=True,
                            reason="no chunks produced")
    doc = upsert_document(session, payload)
    store_chunks_batch(session, doc, drafts, embedder)
    return IngestResult(document_id=doc.id, name=payload.name, num_chunks=len(drafts))


def delete_document(session: Session, name: str) -> bool:
    doc = session.scalar(select(Document).where(Document.name == name))
    if doc is None:
        return False
    session.delete(doc)
    session.flush()
    return True


def get_chunk_by_reference(session: Session, reference: str) -> ChunkHit | None:
    row = session.execute(
        select(Chunk, Document.title)
        .join(Document, Document.id == Chunk.document_id)
        .where(Chunk.exact_reference == reference)
    ).first()
    if row is None:
        return None
    chunk, title = row
    return chunk_to_hit(chunk, title, 1.0)


def get_chunk_context(session: Session, chunk_id: str, context_size: int = 2) -> dict | None:
    """The chunk plus its neighbours by position within the same document."""
    target = session.get(Chunk, chunk_id)
    if target is None:
        return None
    stmt = (
        select(Chunk)
        .where(
            Chunk.document_id == target.document_id,
            Chunk.chunk_index.between(max(0, target.chunk_index - context_size), target.chunk_index + context_size),
        )
        .order_by(Chunk.chunk_index)
    )
    return {
        "target_chunk_id": chunk_id,
        "context_chunks": [
            {
                "id": c.id,
                "content": c.content,
                "exact_reference": c.exact_reference,
                "chunk_index": c.chunk_index,
                "is_target": c.id == chunk_id,
            }
            for c in session.scalars(stmt)
        ],
    }


def get_search_stats(session: Session) -> dict:
    total, books, avg, mx, mn = session.execute(
        select(
            func.count(Chunk.id),
            func.count(func.distinct(Chunk.document_id)),
            func.avg(Chunk.token_count),
            func.max(Chunk.token_count),
            func.min(Chunk.token_count),
        )
    ).one()
    return {
        "total_chunks": total or 0,
        "total_books": books or 0,
        "avg_token_count": float(avg or 0.0),
        "max_token_count": mx or 0,
        "min_token_count": mn or 0,
    }
