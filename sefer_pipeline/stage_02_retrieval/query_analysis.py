"""Derive routing hints (themes, books, key terms) from a question."""

from __future__ import annotations

import re

from sefer_core.schemas import QueryAnalysis
from sefer_pipeline.stage_00_ingestion.analysis import STOPWORDS, ChunkAnalyzer, hebrew_equivalent
from sefer_pipeline.utils.text_cleaning import canonicalize, words

MAX_KEY_TERMS = 5
_REFERENCE = re.compile(r"\b\d+\s*:\s*\d+")
_BIOGRAPHICAL = frozenset({"life", "born", "died", "journey", "vie", "biography", "disciples", "naissance"})

_analyzer = ChunkAnalyzer()


def _book_variants(name: str, title: str | None) -> set[str]:
    variants = {canonicalize(name.replace("_", " "))}
    if title:
        variants.add(canonicalize(title))
    return {v for v in variants if v}


def analyze_query(
    question: str,
    theme_vocabulary: list[str] | None = None,
    concept_vocabulary: list[str] | None = None,
    books: list[tuple[str, str | None]] | None = None,
) -> QueryAnalysis:
    """
    Match the question against the lexicon and the index vocabulary.

    ``books`` is a list of (document name, title) pairs.
    """
    lowered = canonicalize(question)
    question_words = words(question)
    word_set = set(question_words)

    themes = _analyzer.detect_themes(question)
    for term in theme_vocabulary or []:
        if term.lower() in word_set and term not in themes:
            themes.append(term)

    suspected_books = [
        name for name, title in books or []
        if any(v in lowered for v in _book_variants(name, title))
    ]

    concepts = {c.lower() for c in concept_vocabulary or []}
    content_words = list(dict.fromkeys(w for w in question_words if len(w) > 3 and w not in STOPWORDS))
    key_terms = [w for w in content_words if w in concepts] or content_words
    key_terms = [w for w in key_terms if w not in themes][:MAX_KEY_TERMS]

    if _REFERENCE.search(question):
        query_type = "reference"
    elif word_set & _BIOGRAPHICAL:
        query_type = "biographical"
    else:
        query_type = "teaching"

    return QueryAnalysis(
        themes=themes,
        hebrew_themes=[h for h in (hebrew_equivalent(t) for t in themes) if h],
        suspected_books=suspected_books,
        key_terms=key_terms,
        query_type=query_type,
        search_query=question.strip(),
    )
