"""
Chunking functionality for Stage 0.

Splits a document into token-bounded chunks that keep paragraph and sentence
boundaries, carry a stable citation reference, and overlap their neighbours.
"""

from __future__ import annotations

import logging
import math
import re
import uuid
from dataclasses import dataclass, field
from typing import Any

from sefer_core.config import settings
from sefer_core.schemas import DocumentPayload, SectionPayload
from sefer_pipeline.stage_00_ingestion.analysis import ChunkAnalyzer
from sefer_pipeline.utils.text_cleaning import (
    CHARS_PER_TOKEN,
    estimate_tokens,
    extract_hebrew,
    join_texts,
    split_paragraphs,
    split_sentences,
)

logger = logging.getLogger(__name__)

SIZE_TOLERANCE = 1.2
CHUNK_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "sefer:chunk")

_TITLE_PATTERNS = [
    re.compile(r"^תורה\s+([א-ת\s]+)"),   # Torah <name>
    re.compile(r"^הלכות\s+([א-ת\s]+)"),  # Halachot <name>
    re.compile(r"^תפילה\s+([א-ת\s]+)"),  # Tefilah <name>
    re.compile(r"^מעשה\s+([א-ת\s]+)"),   # Ma'aseh <name>
]
_WHITESPACE = re.compile(r"\s")


def chunk_id_for(reference: str) -> str:
    """Chunk ids are derived from the reference so re-processing is idempotent."""
    return str(uuid.uuid5(CHUNK_NAMESPACE, reference))


@dataclass
class Section:
    index: int
    title: str
    hebrew_text: str
    english_text: str
    reference: str

    @property
    def full_text(self) -> str:
        return "\n\n".join(t for t in (self.hebrew_text, self.english_text) if t)


@dataclass
class ChunkDraft:
    """A chunk produced by the chunker, not yet persisted or embedded."""
    id: str
    document_name: str
    chunk_index: int
    section_index: int
    content: str
    exact_reference: str
    token_count: int
    is_complete_section: bool
    section_title: str | None = None
    hebrew_text: str | None = None
    paragraph_number: int | None = None
    chunk_summary: str | None = None
    themes: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


def section_title(section: SectionPayload, position: int) -> str:
    if section.title:
        return section.title
    he = section.he
    first = (he[0] if isinstance(he, list) and he else he) or ""
    first = first.strip() if isinstance(first, str) else ""
    if first:
        for pattern in _TITLE_PATTERNS:
            m = pattern.match(first)
            if m:
                return f"{m.group(1).strip()} ({position + 1})"
        lead = first.split()[:4]
        if lead:
            return f"{' '.join(lead)}... ({position + 1})"
    return f"Section {position + 1}"


def extract_sections(payload: DocumentPayload) -> list[Section]:
    base_ref = payload.ref or payload.name
    sections = []
    for i, sec in enumerate(payload.sections):
        sections.append(Section(
            index=sec.index or i + 1,
            title=section_title(sec, i),
            hebrew_text=join_texts(sec.he, sep="\n\n"),
            english_text=join_texts(sec.text, sep="\n\n"),
            reference=sec.ref or f"{base_ref}:{i + 1}",
        ))
    return sections


def trailing_text(text: str, max_chars: int) -> str:
    """Verbatim suffix of ``text`` no longer than ``max_chars``, starting on a word boundary when possible."""
    if max_chars <= 0 or not text:
        return ""
    if len(text) <= max_chars:
        return text
    start = len(text) - max_chars
    if _WHITESPACE.match(text[start - 1]):
        return text[start:].lstrip()
    m = _WHITESPACE.search(text, start)
    if m is None:
        return text[start:]
    return text[m.end():].lstrip()


class SemanticChunker:
    """
    Hierarchical chunker.

    A section whose estimate fits within ``chunk_size * 1.2`` becomes one chunk.
    Larger sections are split by paragraph, and paragraphs still over budget by
    sentence. After a document is chunked, the trailing ``overlap_percentage``
    of each chunk is copied to the front of the next one.

    Token counts use ``estimate_tokens`` (ceil(chars / 4)), a heuristic.
    """

    def __init__(
        self,
        chunk_size: int | None = None,
        overlap_percentage: int | None = None,
        analyzer: ChunkAnalyzer | None = None,
    ):
        self.chunk_size = chunk_size or settings.CHUNK_SIZE
        self.overlap_percentage = settings.OVERLAP_PERCENTAGE if overlap_percentage is None else overlap_percentage
        self.max_chunk_size = self.chunk_size * SIZE_TOLERANCE
        self.analyzer = analyzer or ChunkAnalyzer()

    def chunk_document(self, payload: DocumentPayload) -> list[ChunkDraft]:
        logger.info("Chunking %s (%d sections)", payload.name, len(payload.sections))
        drafts: list[ChunkDraft] = []
        for section_index, section in enumerate(extract_sections(payload)):
            drafts.extend(self.chunk_section(section, payload, section_index, start_index=len(drafts)))

        if not drafts:
            logger.warning("Document %s produced no chunks", payload.name)
            return drafts

        self._ensure_unique_references(drafts)
        for draft in drafts:
            analysis = self.analyzer.analyze(draft.content, draft.section_title)
            draft.themes = analysis.themes
            draft.keywords = analysis.keywords
            draft.chunk_summary = analysis.summary

        self.add_overlap(drafts)
        logger.info("Chunking complete: %d chunks for %s", len(drafts), payload.name)
        return drafts

    def chunk_section(
        self,
        section: Section,
        payload: DocumentPayload,
        section_index: int,
        start_index: int = 0,
    ) -> list[ChunkDraft]:
        full_text = section.full_text
        if not full_text.strip():
            logger.warning("Empty section %s (%s) in %s, skipping", section_index, section.reference, payload.name)
            return []

        if estimate_tokens(full_text) <= self.max_chunk_size:
            return [self._draft(
                payload, section, section_index,
                chunk_index=start_index,
                content=full_text,
                reference=section.reference,
                hebrew_text=section.hebrew_text or extract_hebrew(full_text),
                complete=True,
            )]

        pieces = self.split_text(full_text, label=section.reference)
        return [
            self._draft(
                payload, section, section_index,
                chunk_index=start_index + n,
                content=piece,
                reference=f"{section.reference}:{n + 1}",
                hebrew_text=extract_hebrew(piece),
                complete=False,
            )
            for n, piece in enumerate(pieces)
        ]

    def split_text(self, text: str, label: str = "") -> list[str]:
        """Split text into pieces of at most ``chunk_size`` estimated tokens, unless one sentence alone is larger."""
        pieces: list[str] = []
        parts: list[str] = []
        chars = 0

        def flush():
            nonlocal parts, chars
            if parts:
                piece = "".join(parts).strip()
                if piece:
                    pieces.append(piece)
            parts, chars = [], 0

        def add(unit: str, sep: str):
            nonlocal chars
            joiner = sep if parts else ""
            if parts and math.ceil((chars + len(joiner) + len(unit)) / CHARS_PER_TOKEN) > self.chunk_size:
                flush()
                joiner = ""
            if not parts and estimate_tokens(unit) > self.max_chunk_size:
                logger.warning(
                    "Indivisible sentence of ~%d tokens exceeds budget in %s",
                    estimate_tokens(unit), label or "<text>",
                )
            parts.append(joiner + unit)
            chars += len(joiner) + len(unit)

        for paragraph in split_paragraphs(text):
            if estimate_tokens(paragraph) > self.chunk_size:
                flush()
                for sentence in split_sentences(paragraph):
                    add(sentence, " ")
                flush()
            else:
                add(paragraph, "\n\n")
        flush()
        return pieces

    def add_overlap(self, drafts: list[ChunkDraft]) -> None:
        """Prefix chunk i+1 with the verbatim tail of chunk i, within the size ceiling of chunk i+1."""
        if len(drafts) < 2 or self.overlap_percentage <= 0:
            return
        originals = [d.content for d in drafts]
        ceiling_chars = int(self.max_chunk_size) * CHARS_PER_TOKEN
        for i in range(len(drafts) - 1):
            receiver = drafts[i + 1]
            wanted = int(len(originals[i]) * self.overlap_percentage / 100)
            headroom = ceiling_chars - len(receiver.content) - 1
            tail = trailing_text(originals[i], min(wanted, headroom))
            if not tail:
                logger.debug("No overlap room for %s", receiver.exact_reference)
                continue
            receiver.content = f"{tail} {receiver.content}"
            receiver.token_count = estimate_tokens(receiver.content)

    def _draft(
        self,
        payload: DocumentPayload,
        section: Section,
        section_index: int,
        *,
        chunk_index: int,
        content: str,
        reference: str,
        hebrew_text: str | None,
        complete: bool,
    ) -> ChunkDraft:
        return ChunkDraft(
            id=chunk_id_for(reference),
            document_name=payload.name,
            chunk_index=chunk_index,
            section_index=section_index,
            content=content,
            exact_reference=reference,
            token_count=estimate_tokens(content),
            is_complete_section=complete,
            section_title=section.title,
            hebrew_text=hebrew_text or None,
            paragraph_number=section_index + 1,
            metadata={
                "book_title": payload.title,
                "hebrew_title": payload.hebrew_title,
                "category": payload.category,
                "is_complete_section": complete,
                "extraction_method": payload.metadata.get("extraction_method"),
            },
        )

    @staticmethod
    def _ensure_unique_references(drafts: list[ChunkDraft]) -> None:
        seen: dict[str, int] = {}
        for draft in drafts:
            ref = draft.exact_reference
            if ref in seen:
                seen[ref] += 1
                draft.exact_reference = f"{ref}~{seen[ref]}"
                draft.id = chunk_id_for(draft.exact_reference)
                logger.warning("Duplicate reference %s renamed to %s", ref, draft.exact_reference)
            else:
                seen[ref] = 1


def chunk_text(text: str, chunk_size: int | None = None, overlap_percentage: int | None = None,
               name: str = "text") -> list[str]:
    """Convenience wrapper: chunk a single plain text and return just the chunk contents."""
    payload = DocumentPayload(name=name, title=name, sections=[SectionPayload(index=1, text=text)])
    return [d.content for d in SemanticChunker(chunk_size, overlap_percentage).chunk_document(payload)]
