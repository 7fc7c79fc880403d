"""
FAQ knowledge base — categories, questions and answers loaded from YAML.

Matching a free-text question:
  1. normalize (fold accents, drop punctuation and stop-words)
  2. exact match on the normalized question
  3. best similarity ratio above the threshold
  4. keyword fallback answers (preço, horário, garantia, ...)
  5. no answer
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

from utils.text import contains_keyword, normalize, similarity

logger = structlog.get_logger()

DEFAULT_FAQ_PATH = Path(__file__).resolve().parent.parent / "config" / "faq.yaml"
SIMILARITY_THRESHOLD = 0.75


@dataclass(frozen=True)
class Category:
    id: int
    name: str
    description: str


@dataclass(frozen=True)
class FaqEntry:
    id: int
    category: int
    question: str
    answer: str

    @property
    def normalized(self) -> str:
        return normalize(self.question)


@dataclass(frozen=True)
class Match:
    answer: str
    entry: Optional[FaqEntry] = None
    score: float = 0.0
    method: str = "exact"          # exact | similarity | keyword


class KnowledgeBase:

    def __init__(self, categories: list[Category], entries: list[FaqEntry],
                 fallbacks: Optional[dict[str, str]] = None,
                 threshold: float = SIMILARITY_THRESHOLD):
        self.categories = {c.id: c for c in categories}
        self.entries = list(entries)
        self.fallbacks = dict(fallbacks or {})
        self.threshold = threshold

    @classmethod
    def from_yaml(cls, path: Optional[str] = None) -> "KnowledgeBase":
        source = Path(path) if path else DEFAULT_FAQ_PATH
        with open(source, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

        categories = [Category(int(c["id"]), c["name"], c.get("description", ""))
                      for c in raw.get("categories", [])]
        entries = [FaqEntry(int(e["id"]), int(e["category"]), e["question"], e["answer"])
                   for e in raw.get("faqs", [])]
        kb = cls(categories, entries, raw.get("fallbacks") or {})
        logger.info("faq_loaded", path=str(source), categories=len(categories),
                    entries=len(entries))
        return kb

    def get(self, entry_id: int) -> Optional[FaqEntry]:
        return next((e for e in self.entries if e.id == entry_id), None)

    def in_category(self, category_id: int) -> list[FaqEntry]:
        return [e for e in self.entries if e.category == category_id]

    def most_frequent(self, limit: int = 5) -> list[FaqEntry]:
        # Seed order is the curated "most asked" order
        return self.entries[:limit]

    def find_answer(self, question: str) -> Optional[Match]:
        query = normalize(question)
        if not query:
            return None

        for entry in self.entries:
            if entry.normalized == query:
                return Match(entry.answer, entry, 1.0, "exact")

        best: Optional[FaqEntry] = None
        best_score = 0.0
        for entry in self.entries:
            score = similarity(query, entry.normalized)
            if score > best_score:
                best, best_score = entry, score
        if best is not None and best_score > self.threshold:
            return Match(best.answer, best, round(best_score, 3), "similarity")

        for keyword, answer in self.fallbacks.items():
            if contains_keyword(query, [keyword]):
                return Match(answer, None, 0.0, "keyword")

        logger.info("faq_no_match", query=query, best_score=round(best_score, 3))
        return None
