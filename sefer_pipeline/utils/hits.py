from sefer_core.models import Chunk
from sefer_core.schemas import ChunkHit


def chunk_to_hit(chunk: Chunk, book_title: str | None, score: float, distance: float | None = None) -> ChunkHit:
    return ChunkHit(
        id=chunk.id,
        content=chunk.content,
        hebrew_text=chunk.hebrew_text,
        exact_reference=chunk.exact_reference,
        section_title=chunk.section_title,
        token_count=chunk.token_count or 0,
        chunk_summary=chunk.chunk_summary,
        themes=list(chunk.themes or []),
        keywords=list(chunk.keywords or []),
        book_title=book_title,
        score=score,
        distance=distance,
    )


def snippet(text: str | None, limit: int = 280) -> str:
    text = (text or "").replace("\n", " ")
    return text[:limit] + ("…" if len(text) > limit else "")
