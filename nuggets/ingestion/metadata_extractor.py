"""
Heuristic metadata extraction for content units.

Derives topics, difficulty (1-10), prerequisites, estimated reading time and
related concepts from plain text. Extraction never blocks nugget creation:
any internal failure degrades to the safe default record.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping

from loguru import logger
from pydantic import BaseModel, Field

MAX_TOPICS = 10
MAX_RELATED = 5
MAX_PREREQUISITES = 5

STOP_WORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "but", "by", "can", "do", "each",
        "for", "from", "has", "have", "he", "her", "his", "how", "i", "if", "in",
        "into", "is", "it", "its", "let", "may", "my", "no", "not", "of", "on", "or",
        "our", "she", "so", "some", "such", "that", "the", "their", "then", "there",
        "these", "they", "this", "those", "to", "was", "we", "were", "what", "when",
        "where", "which", "while", "who", "why", "will", "with", "you", "your",
        "chapter", "section", "figure", "table", "example", "note", "summary",
    }
)

TECHNICAL_SUFFIXES = ("tion", "sion", "ity", "ment", "ness")

_CAPITALIZED_RUN = re.compile(r"\b[A-Z][A-Za-z0-9'-]*(?:[ \t]+[A-Z][A-Za-z0-9'-]*)*\b")
_WORD = re.compile(r"[A-Za-z][A-Za-z'-]*")
_SENTENCE_END = re.compile(r"[.!?]+(?:\s+|$)")
_HEADING = re.compile(r"^\s*(?:#{1,6}\s+\S|[A-Z][A-Z0-9 ]{3,}$|\d+(?:\.\d+)+\s+\S)", re.MULTILINE)
_FORMULA = re.compile(r"(?:[A-Za-z0-9)\]]\s*[=<>^]\s*[A-Za-z0-9(\[])|\\[a-z]+\{|\$[^$\n]+\$")
_CODE = re.compile(r"```|^(?: {4}|\t)\S", re.MULTILINE)


class NuggetMetadata(BaseModel):
    """Structured metadata stored on every nugget."""

    topics: list[str] = Field(default_factory=list)
    difficulty: int = Field(1, ge=1, le=10)
    prerequisites: list[str] = Field(default_factory=list)
    estimated_time: int = Field(1, ge=1, description="Minutes")
    related_concepts: list[str] = Field(default_factory=list)


def default_metadata() -> NuggetMetadata:
    return NuggetMetadata()


def count_syllables(word: str) -> int:
    """Approximate syllables by counting vowel groups."""
    word = word.lower()
    if len(word) <= 3:
        return 1
    word = re.sub(r"e$", "", word)
    groups = re.findall(r"[aeiouy]+", word)
    return max(1, len(groups))


def is_complex_word(word: str) -> bool:
    word = word.lower()
    return count_syllables(word) >= 3 or word.endswith(TECHNICAL_SUFFIXES) or len(word) >= 12


class MetadataExtractor:
    """Extract structural metadata from plain text."""

    def __init__(self, reading_rate_wpm: int = 200):
        self.reading_rate_wpm = reading_rate_wpm

    def extract_metadata(self, text: str, known_topics: Mapping[str, int] | None = None) -> NuggetMetadata:
        """
        Extract metadata from text.

        Args:
            text: Plain text of one content unit
            known_topics: Topics already seen in the organization, mapped to
                the difficulty at which they were seen. Used to infer
                prerequisites.

        Returns:
            Validated metadata; the default record for empty input or on
            any extraction failure.
        """
        if not text or not text.strip():
            return default_metadata()

        try:
            words = _WORD.findall(text)
            topics = self.extract_topics(text)
            difficulty = self.estimate_difficulty(text)
            return NuggetMetadata(
                topics=topics,
                difficulty=difficulty,
                prerequisites=self.infer_prerequisites(text, topics, difficulty, known_topics or {}),
                estimated_time=self.estimate_time(len(words)),
                related_concepts=topics[:MAX_RELATED],
            )
        except Exception as e:  # Intentionally broad - enrichment must never block nugget creation
            logger.warning("Metadata extraction failed ({} chars), using defaults: {}", len(text), e)
            return default_metadata()

    def estimate_time(self, word_count: int) -> int:
        """Reading time in whole minutes, at least 1."""
        return max(1, math.ceil(word_count / self.reading_rate_wpm))

    # ========================================
    # Topics
    # ========================================

    def extract_topics(self, text: str) -> list[str]:
        """
        Rank capitalized phrases by weighted frequency.

        Multi-word phrases weigh 2, single capitalized words that do not open
        a sentence weigh 1. Ties keep first-appearance order.
        """
        scores: dict[str, float] = {}
        first_seen: dict[str, int] = {}
        canonical: dict[str, str] = {}

        for match in _CAPITALIZED_RUN.finditer(text):
            words = match.group(0).split()
            stripped = 0
            while words and words[0].lower() in STOP_WORDS:
                words.pop(0)
                stripped += 1
            while words and words[-1].lower() in STOP_WORDS:
                words.pop()
            if not words:
                continue

            if len(words) >= 2:
                weight = 2.0
            else:
                word = words[0]
                if stripped == 0 and self._is_sentence_initial(text, match.start()):
                    continue
                if len(word) < 3 and not word.isupper():
                    continue
                weight = 1.0

            phrase = " ".join(words)
            if len(phrase) > 50:
                continue
            key = phrase.lower()
            canonical.setdefault(key, phrase)
            first_seen.setdefault(key, match.start())
            scores[key] = scores.get(key, 0.0) + weight

        ranked = sorted(scores, key=lambda k: (-scores[k], first_seen[k]))
        return [canonical[k] for k in ranked[:MAX_TOPICS]]

    @staticmethod
    def _is_sentence_initial(text: str, index: int) -> bool:
        before = text[:index].rstrip(" \t")
        return not before or before[-1] in ".!?:\n\"'(#*-"

    # ========================================
    # Difficulty
    # ========================================

    def estimate_difficulty(self, text: str) -> int:
        """
        Score difficulty 1-10.

        Sum of four non-decreasing components: average sentence length
        (up to 3), share of complex words (up to 3), structural markers such
        as headings, formulas and code (up to 1.5) and overall length (up to 1.5).
        """
        words = _WORD.findall(text)
        word_count = len(words)
        if word_count == 0:
            return 1

        sentences = max(1, len(_SENTENCE_END.findall(text)))
        avg_sentence = word_count / sentences
        sentence_component = min(3.0, max(0.0, (avg_sentence - 8.0) / 4.0))

        complex_ratio = sum(1 for w in words if is_complex_word(w)) / word_count
        rarity_component = min(3.0, complex_ratio * 10.0)

        markers = len(_HEADING.findall(text)) + len(_FORMULA.findall(text)) + len(_CODE.findall(text))
        structure_component = min(1.5, markers * 0.5)

        length_component = min(1.5, word_count / 400.0)

        score = 1.0 + sentence_component + rarity_component + structure_component + length_component
        return max(1, min(10, int(round(score))))

    # ========================================
    # Prerequisites
    # ========================================

    def infer_prerequisites(
        self,
        text: str,
        topics: list[str],
        difficulty: int,
        known_topics: Mapping[str, int],
    ) -> list[str]:
        """
        Previously-seen topics mentioned here, other than this unit's leading topic.

        A known topic counts only when it was seen at a difficulty no higher
        than this unit's. Ordered by first mention.
        """
        leading = topics[0].lower() if topics else None
        found: list[tuple[int, str]] = []
        for topic, seen_difficulty in known_topics.items():
            if topic.lower() == leading or seen_difficulty > difficulty:
                continue
            match = re.search(rf"\b{re.escape(topic)}\b", text, re.IGNORECASE)
            if match:
                found.append((match.start(), topic))
        found.sort()
        return [topic for _, topic in found[:MAX_PREREQUISITES]]
