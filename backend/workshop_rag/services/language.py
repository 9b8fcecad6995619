"""Heuristic language detection and provider-side text preprocessing.

Detection is script and diacritic based: it is cheap, deterministic and good
enough to pick a tokenizer-friendly preprocessing path and to boost
same-language documents at search time. It is not a general classifier.
"""

from __future__ import annotations

import re

from workshop_rag.schemas.embedding import LanguageAlternative, LanguageDetection
from workshop_rag.utils.text import collapse_whitespace

DEFAULT_LANGUAGE = "en"
_DEFAULT_CONFIDENCE = 0.7
_SCRIPT_CONFIDENCE = 0.9
_DIACRITIC_CONFIDENCE = 0.75
_ALTERNATIVE_CONFIDENCE = 0.5

# evaluated in order; kana precedes Han since Japanese text mixes both
_SCRIPT_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("pl", re.compile(r"[ąćęłńśźżĄĆĘŁŃŚŹŻ]")),  # ó is shared with es/fr
    ("ru", re.compile(r"[а-яёА-ЯЁ]")),
    ("ar", re.compile(r"[\u0600-\u06ff\u0750-\u077f\u08a0-\u08ff]")),
    ("ja", re.compile(r"[\u3040-\u309f\u30a0-\u30ff]")),
    ("ko", re.compile(r"[\uac00-\ud7af\u1100-\u11ff]")),
    ("zh", re.compile(r"[\u4e00-\u9fff\u3400-\u4dbf\uf900-\ufaff]")),
)

_DIACRITIC_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("de", re.compile(r"[äöüßÄÖÜ]")),
    ("es", re.compile(r"[ñÑ¿¡]")),
    ("fr", re.compile(r"[çœæàâèêëîïôûùÇŒÆÀÂÈÊËÎÏÔÛÙ]")),
)

_NON_WORD = re.compile(r"[^\w\s]")


def detect_language(text: str) -> LanguageDetection:
    sample = text or ""
    matches: list[tuple[str, float]] = [
        (code, _SCRIPT_CONFIDENCE) for code, pattern in _SCRIPT_PATTERNS if pattern.search(sample)
    ]
    matches.extend(
        (code, _DIACRITIC_CONFIDENCE) for code, pattern in _DIACRITIC_PATTERNS if pattern.search(sample)
    )
    if not matches:
        return LanguageDetection(language=DEFAULT_LANGUAGE, confidence=_DEFAULT_CONFIDENCE)

    language, confidence = matches[0]
    alternatives = [
        LanguageAlternative(language=code, confidence=_ALTERNATIVE_CONFIDENCE)
        for code, _ in matches[1:]
        if code != language
    ]
    return LanguageDetection(language=language, confidence=confidence, alternatives=alternatives)


def preprocess_text(text: str) -> str:
    """Replace punctuation with spaces and collapse whitespace.

    ``\\w`` is Unicode-aware, so letters of every script survive. Falls back to
    the collapsed input when nothing but punctuation remains.
    """

    collapsed = collapse_whitespace(text.strip())
    processed = collapse_whitespace(_NON_WORD.sub(" ", collapsed))
    return processed or collapsed
