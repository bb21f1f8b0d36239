"""
Source payload normalization for Stage 0.

Raw source files come in several shapes. Each strategy below is a pure
function from the raw mapping to a ``DocumentPayload`` (or None when the
shape does not apply). Strategies are tried in order and the first one that
yields a payload with at least one non-empty section wins.
"""

from __future__ import annotations

import glob
import json
import logging
import os
from typing import Any, Callable, Iterable, Optional

from pydantic import ValidationError

from sefer_core.errors import IngestError
from sefer_core.schemas import DocumentPayload, SectionPayload
from sefer_pipeline.utils.text_cleaning import join_texts, split_paragraphs

logger = logging.getLogger(__name__)

Strategy = Callable[[dict, dict], Optional[DocumentPayload]]


def _unwrap(raw: dict) -> dict:
    # extraction dumps wrap the text in {"data": {...}}
    data = raw.get("data")
    if isinstance(data, dict) and any(k in data for k in ("sections", "he", "text", "content")):
        merged = {k: v for k, v in raw.items() if k != "data"}
        merged.update(data)
        return merged
    return raw


def _header(raw: dict, defaults: dict) -> dict:
    name = raw.get("name") or raw.get("book") or defaults.get("name")
    if not name:
        raise IngestError("payload has no document name")
    return {
        "name": name,
        "title": raw.get("title") or defaults.get("title") or name.replace("_", " "),
        "hebrew_title": raw.get("hebrew_title") or raw.get("heTitle") or defaults.get("hebrew_title"),
        "category": raw.get("category") or defaults.get("category"),
        "ref": raw.get("ref") or defaults.get("ref") or name,
        "metadata": dict(raw.get("metadata") or {}),
    }


def from_sections(raw: dict, defaults: dict) -> Optional[DocumentPayload]:
    """``{"sections": [{"section": 1, "he": [...], "text": [...], "ref": "..."}]}``"""
    sections = raw.get("sections")
    if not isinstance(sections, list) or not sections:
        return None
    out = []
    for i, sec in enumerate(sections):
        if not isinstance(sec, dict):
            continue
        out.append(SectionPayload(
            index=sec.get("section") or sec.get("index") or i + 1,
            he=sec.get("he") or sec.get("hebrew"),
            text=sec.get("text") or sec.get("english"),
            ref=sec.get("ref"),
            title=sec.get("title"),
        ))
    payload = DocumentPayload(**_header(raw, defaults), sections=out)
    payload.metadata.setdefault("extraction_method", "sections")
    return payload


def from_parallel_text(raw: dict, defaults: dict) -> Optional[DocumentPayload]:
    """``{"he": [...], "text": [...]}`` with paragraph i of each language aligned."""
    if not raw.get("he") and not raw.get("text"):
        return None
    he = raw.get("he")
    en = raw.get("text")
    he_list = he if isinstance(he, list) else [he]
    en_list = en if isinstance(en, list) else [en]
    n = max(len(he_list), len(en_list))
    sections = [
        SectionPayload(
            index=i + 1,
            he=he_list[i] if i < len(he_list) else None,
            text=en_list[i] if i < len(en_list) else None,
        )
        for i in range(n)
    ]
    payload = DocumentPayload(**_header(raw, defaults), sections=sections)
    payload.metadata.setdefault("extraction_method", "parallel_text")
    return payload


def from_plain_text(raw: dict, defaults: dict) -> Optional[DocumentPayload]:
    """``{"content": "..."}``; one section per blank-line separated block."""
    content = raw.get("content")
    if not isinstance(content, str) or not content.strip():
        return None
    sections = [SectionPayload(index=i + 1, text=p) for i, p in enumerate(split_paragraphs(content))]
    payload = DocumentPayload(**_header(raw, defaults), sections=sections)
    payload.metadata.setdefault("extraction_method", "plain_text")
    return payload


DEFAULT_STRATEGIES: tuple[Strategy, ...] = (from_sections, from_parallel_text, from_plain_text)


def has_text(payload: DocumentPayload) -> bool:
    return any(join_texts(s.he) or join_texts(s.text) for s in payload.sections)


def normalize_payload(
    raw: dict,
    defaults: dict | None = None,
    strategies: Iterable[Strategy] = DEFAULT_STRATEGIES,
) -> DocumentPayload:
    """
    Turn a raw source mapping into a ``DocumentPayload``.

    Raises:
        IngestError: if no strategy yields a payload with any text.
    """
    if not isinstance(raw, dict):
        raise IngestError(f"expected a JSON object, got {type(raw).__name__}")
    defaults = defaults or {}
    raw = _unwrap(raw)
    for strategy in strategies:
        try:
            payload = strategy(raw, defaults)
        except ValidationError as e:
            logger.debug("strategy %s rejected payload: %s", strategy.__name__, e)
            continue
        if payload is not None and has_text(payload):
            return payload
    raise IngestError(f"no usable text in payload for {defaults.get('name') or raw.get('name') or '<unnamed>'}")


def iter_source_files(root: str, pattern: str = "*.json") -> Iterable[str]:
    """Iterate over source JSON files under ``root``, skipping summary files."""
    for path in sorted(glob.glob(os.path.join(root, "**", pattern), recursive=True)):
        if os.path.isfile(path) and "summary" not in os.path.basename(path):
            yield path


def load_source_file(path: str) -> DocumentPayload:
    """Read one source file; the file stem is the default document name."""
    stem = os.path.splitext(os.path.basename(path))[0]
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise IngestError(f"cannot read {path}: {e}") from e
    return normalize_payload(raw, defaults={"name": stem})
