"""
Venue name similarity.

One metric for the whole engine: candidate scoring, insert-time checks,
rename collision checks and name-quality assessment all call the same
scorer instance.

Normalization runs before scoring:
  1. Unicode NFKC (fullwidth / compatibility forms collapse)
  2. Case-fold
  3. Strip diacritical marks (cafe == café)
  4. Drop apostrophes ("O'Reilly's" == "OReillys"), other punctuation -> space
  5. Collapse whitespace and trim

The metric is rapidfuzz's normalized Indel similarity (ratio / 100):
symmetric, bounded to [0, 1], and 1.0 only for identical strings.
"""

from __future__ import annotations

import re
import unicodedata
from functools import lru_cache
from typing import Protocol

from rapidfuzz import fuzz

_APOSTROPHES_RE = re.compile(r"['‘’ʼ`]")
_PUNCT_RE = re.compile(r"[^\w\s]|_")
_WHITESPACE_RE = re.compile(r"\s+")

_NORMALIZE_CACHE_SIZE = 4096


def strip_accents(text: str) -> str:
    """Remove combining marks after NFD decomposition."""
    nfd = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in nfd if unicodedata.category(ch)[0] != "M")


@lru_cache(maxsize=_NORMALIZE_CACHE_SIZE)
def normalize_name(raw_name: str) -> str:
    if not raw_name:
        return ""

    text = unicodedata.normalize("NFKC", raw_name)
    text = text.casefold()
    text = strip_accents(text)
    text = _APOSTROPHES_RE.sub("", text)
    text = _PUNCT_RE.sub(" ", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


class SimilarityScorer(Protocol):
    """Symmetric fuzzy name similarity in [0.0, 1.0]."""

    def score(self, name_a: str, name_b: str) -> float: ...


class NameSimilarity:
    """Indel-ratio scorer over normalized names."""

    def score(self, name_a: str, name_b: str) -> float:
        a = normalize_name(name_a or "")
        b = normalize_name(name_b or "")

        if not a and not b:
            return 1.0
        if not a or not b:
            return 0.0
        if a == b:
            return 1.0

        ratio = fuzz.ratio(a, b) / 100.0
        # Never report identity for strings that differ after normalization
        return min(max(ratio, 0.0), 0.9999)


DEFAULT_SCORER = NameSimilarity()
