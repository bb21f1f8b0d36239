"""
Per-chunk thematic metadata: themes, keywords and a short summary.

Themes come from a fixed lexicon of Breslov teaching themes, each with its
transliterated, French and Hebrew surface forms. Keywords are the most
frequent content words of the chunk.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field

from sefer_pipeline.utils.text_cleaning import split_sentences, words

# canonical theme -> (hebrew equivalent, surface forms)
THEME_LEXICON: dict[str, tuple[str, tuple[str, ...]]] = {
    "joy": ("שמחה", ("joy", "joie", "simcha", "simchah")),
    "prayer": ("תפילה", ("prayer", "prière", "priere", "tefillah", "tefilah")),
    "repentance": ("תשובה", ("repentance", "repentir", "teshuvah", "techouva")),
    "faith": ("אמונה", ("faith", "foi", "emunah", "emounah")),
    "hitbodedut": ("התבודדות", ("hitbodedut", "hitbodedout", "méditation", "seclusion")),
    "torah": ("תורה", ("torah",)),
    "tzaddik": ("צדיק", ("tzaddik", "tsaddik", "tzadik")),
    "peace": ("שלום", ("peace", "paix", "shalom")),
    "love": ("אהבה", ("love", "amour", "ahavah")),
    "creation": ("בריאה", ("creation", "création")),
    "world": ("עולם", ("world", "monde", "olam")),
    "mitzvah": ("מצוה", ("mitzvah", "commandment", "mitsva")),
    "truth": ("אמת", ("truth", "vérité", "emet")),
}

HEBREW_EQUIVALENTS: dict[str, str] = {}
for _theme, (_hebrew, _forms) in THEME_LEXICON.items():
    HEBREW_EQUIVALENTS[_theme] = _hebrew
    for _form in _forms:
        HEBREW_EQUIVALENTS.setdefault(_form, _hebrew)

STOPWORDS = frozenset("""
about above after again against also among because been before being below between both could
does doing down during each even every from further have having here hers herself himself into
itself just more most myself once only other ours ourselves over same should some such than
that their theirs them themselves then there these they this those through under until very
were what when where which while whom with would your yours yourself yourselves shall said
says will upon unto thou thee thine thus
avec dans elle elles être leur leurs mais même nous pour sans sont tout tous toute toutes vous
cette ceux comme dont était fait faire plus peut
""".split())

MAX_KEYWORDS = 8
SUMMARY_CHARS = 200


def hebrew_equivalent(term: str) -> str | None:
    return HEBREW_EQUIVALENTS.get(term.strip().lower())


def _theme_patterns() -> dict[str, list[re.Pattern]]:
    patterns: dict[str, list[re.Pattern]] = {}
    for theme, (hebrew, forms) in THEME_LEXICON.items():
        compiled = [re.compile(rf"\b{re.escape(f)}\b", re.IGNORECASE) for f in forms]
        # Hebrew words take attached prefixes (ו, ה, ב...), so match as substring
        compiled.append(re.compile(re.escape(hebrew)))
        patterns[theme] = compiled
    return patterns


_PATTERNS = _theme_patterns()


@dataclass
class ChunkAnalysis:
    themes: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    summary: str = ""


class ChunkAnalyzer:
    """Deterministic theme/keyword/summary extraction for a chunk of text."""

    def __init__(self, max_keywords: int = MAX_KEYWORDS):
        self.max_keywords = max_keywords

    def detect_themes(self, text: str) -> list[str]:
        return [theme for theme, pats in _PATTERNS.items() if any(p.search(text) for p in pats)]

    def extract_keywords(self, text: str) -> list[str]:
        counts = Counter(w for w in words(text) if len(w) > 3 and not w.isdigit() and w not in STOPWORDS)
        return [w for w, _ in counts.most_common(self.max_keywords)]

    def summarize(self, text: str, section_title: str | None) -> str:
        sentences = split_sentences(text)
        if not sentences:
            return f"Teaching from {section_title or 'this section'}"
        lead = sentences[0]
        if len(lead) > SUMMARY_CHARS:
            lead = lead[:SUMMARY_CHARS].rsplit(" ", 1)[0] + "..."
        return lead

    def analyze(self, text: str, section_title: str | None = None) -> ChunkAnalysis:
        return ChunkAnalysis(
            themes=self.detect_themes(text),
            keywords=self.extract_keywords(text),
            summary=self.summarize(text, section_title),
        )
