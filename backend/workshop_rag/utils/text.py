"""Text normalisation, token estimation and similarity hashing helpers."""

from __future__ import annotations

import hashlib
import math
import re
import unicodedata
from collections import Counter
from typing import Iterable

_WHITESPACE = frozenset("\u0009\u000a\u000b\u000c\u000d\u0020\u00a0\u1680\u2000\u2001\u2002\u2003\u2004\u2005\u2006\u2007\u2008\u2009\u200a\u202f\u205f\u3000")
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_WORD = re.compile(r"\w+", re.UNICODE)

CHARS_PER_TOKEN = 4


def collapse_whitespace(text: str) -> str:
    """Collapse consecutive whitespace characters into single spaces."""

    if not text:
        return ""

    parts: list[str] = []
    current: list[str] = []
    for char in text:
        if char in _WHITESPACE:
            if current:
                parts.append("".join(current))
                current.clear()
        else:
            current.append(char)
    if current:
        parts.append("".join(current))
    return " ".join(parts)


def normalise_for_embedding(text: str) -> tuple[str, str]:
    """Return collapsed text alongside the hashable normalised form."""

    stripped = text.strip()
    if not stripped:
        return "", ""

    collapsed = collapse_whitespace(stripped)
    nfkc = unicodedata.normalize("NFKC", collapsed)
    normalised = nfkc.casefold()
    return collapsed, normalised


def content_hash(text: str) -> str:
    collapsed, normalised = normalise_for_embedding(text or "")
    base = normalised or collapsed
    return hashlib.sha256(base.encode("utf-8")).hexdigest()


def estimate_tokens(text: str | None) -> int:
    """Rough token estimate used for budgets and cost previews: one token per four characters."""

    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def split_sentences(text: str) -> list[str]:
    return [part.strip() for part in _SENTENCE_SPLIT.split(text or "") if part.strip()]


def tokenize_words(text: str) -> list[str]:
    return [match.group(0).casefold() for match in _WORD.finditer(text or "")]


def extract_keywords(text: str, *, limit: int = 5, min_length: int = 4) -> list[str]:
    """Return the most frequent words longer than ``min_length - 1`` characters."""

    counts = Counter(word for word in tokenize_words(text) if len(word) >= min_length)
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return [word for word, _ in ranked[:limit]]


def compute_simhash64(tokens: Iterable[str]) -> int | None:
    """Compute a 64-bit SimHash for the provided token stream."""

    weights = [0] * 64
    token_seen = False
    for token in tokens:
        if not token:
            continue
        token_seen = True
        digest = hashlib.sha256(token.encode("utf-8")).digest()
        value = int.from_bytes(digest[:8], "big", signed=False)
        for bit in range(64):
            if value & (1 << bit):
                weights[bit] += 1
            else:
                weights[bit] -= 1
    if not token_seen:
        return None
    fingerprint = 0
    for bit, weight in enumerate(weights):
        if weight >= 0:
            fingerprint |= 1 << bit
    return fingerprint


def hamming_distance(left: int, right: int) -> int:
    return bin((left ^ right) & 0xFFFFFFFFFFFFFFFF).count("1")
