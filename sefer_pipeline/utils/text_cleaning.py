# sefer_pipeline/utils/text_cleaning.py
from __future__ import annotations

import math
import re
from typing import Iterable, List

# Latin terminators plus Hebrew sof pasuq (U+05C3) and paseq (U+05C0)
SENTENCE_TERMINATORS = ".!?׃׀"
_SENT_SPLIT = re.compile(r"(?<=[\.!?׃׀])\s+")
_PARA_SPLIT = re.compile(r"\n\s*\n")
# Hebrew block plus the directional marks that travel with it
_HEBREW_RUN = re.compile(r"[֐-׿‎‏][֐-׿‎‏\s\"']*")
_WORD = re.compile(r"\w+", re.UNICODE)

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """
    Approximate token count as ceil(chars / 4).

    This is a heuristic for mixed Hebrew/Latin text, not a tokenizer count.
    Budget logic downstream must treat it as an estimate.
    """
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def split_paragraphs(text: str) -> List[str]:
    return [p.strip() for p in _PARA_SPLIT.split(text or "") if p.strip()]


def split_sentences(text: str) -> List[str]:
    """
    Split on sentence terminators, keeping the terminator with its sentence.

    Handles '.', '!', '?' and the Hebrew sof pasuq / paseq marks.
    """
    text = text or ""
    if not text.strip():
        return []
    return [s.strip() for s in _SENT_SPLIT.split(text) if s.strip()]


def extract_hebrew(text: str) -> str | None:
    """Collect the Hebrew runs of a mixed-script string, or None if there are none."""
    runs = [m.group(0).strip() for m in _HEBREW_RUN.finditer(text or "")]
    runs = [r for r in runs if r]
    if not runs:
        return None
    return " ".join(runs)


def join_texts(value: Iterable[str] | str | None, sep: str = " ") -> str:
    """Flatten a string-or-list text field into a single string."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return sep.join(v.strip() for v in value if v and v.strip())


def words(text: str) -> List[str]:
    return _WORD.findall((text or "").lower())


def canonicalize(name: str) -> str:
    return re.sub(r"\s+", " ", name.strip()).lower()
