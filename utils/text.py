"""Text helpers — accent folding, normalization, keyword matching, similarity."""
from __future__ import annotations

import re
import unicodedata
from difflib import SequenceMatcher
from typing import Iterable

STOPWORDS = frozenset({
    "o", "a", "os", "as", "um", "uma", "uns", "umas", "de", "do", "da", "dos",
    "das", "no", "na", "nos", "nas", "ao", "aos", "pelo", "pela", "pelos",
    "pelas", "como", "que", "quando", "onde", "quem", "qual", "e", "em", "para",
    "voces", "vcs", "meu", "minha",
})


def fold(text: str) -> str:
    """Lower-case and strip accents: 'Orçamento' → 'orcamento'."""
    decomposed = unicodedata.normalize("NFKD", text or "")
    return "".join(c for c in decomposed if not unicodedata.combining(c)).lower()


def normalize(text: str, drop_stopwords: bool = True) -> str:
    """Fold, remove punctuation, collapse whitespace and optionally drop stop-words."""
    cleaned = re.sub(r"[^\w\s]", " ", fold(text))
    words = cleaned.split()
    if drop_stopwords:
        words = [w for w in words if w not in STOPWORDS]
    return " ".join(words)


def contains_keyword(text: str, keywords: Iterable[str]) -> bool:
    """Whole-word (or whole-phrase) keyword match on folded text."""
    folded = " " + " ".join(re.sub(r"[^\w\s]", " ", fold(text)).split()) + " "
    for keyword in keywords:
        if f" {fold(keyword)} " in folded:
            return True
    return False


def similarity(a: str, b: str) -> float:
    if not a or not b:
        return 0.0
    return SequenceMatcher(None, a, b).ratio()


def digits_only(value: str) -> str:
    return re.sub(r"\D", "", value or "")
