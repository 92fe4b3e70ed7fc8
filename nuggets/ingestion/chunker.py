"""
Semantic chunker for extracted source text.

Splits text into content-unit sized chunks that respect paragraph boundaries
and fall back to sentence boundaries for oversized paragraphs. Each chunk
becomes one nugget.
"""
from __future__ import annotations

import re
from dataclasses import dataclass

from loguru import logger

_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_SENTENCE_COUNT = re.compile(r"[.!?]+(?:\s+|$)")


@dataclass
class TextChunk:
    """
    A chunk of source text.

    Attributes:
        index: Position of the chunk within its source (0-based)
        text: Chunk content
        word_count: Whitespace-delimited word count
        sentence_count: Approximate sentence count
    """
    index: int
    text: str
    word_count: int = 0
    sentence_count: int = 0

    def __post_init__(self):
        if self.word_count == 0:
            self.word_count = len(self.text.split())
        if self.sentence_count == 0:
            self.sentence_count = max(1, len(_SENTENCE_COUNT.findall(self.text)))


class SemanticChunker:
    """Paragraph-first chunker with sentence fallback."""

    def __init__(self, max_chunk_chars: int = 2000, min_chunk_chars: int = 200, overlap_chars: int = 100):
        """
        Initialize the chunker.

        Args:
            max_chunk_chars: Maximum characters per chunk
            min_chunk_chars: A chunk is only closed once it reaches this size
            overlap_chars: Tail of the previous chunk repeated at the start of the next
        """
        self.max_chunk_chars = max_chunk_chars
        self.min_chunk_chars = min_chunk_chars
        self.overlap_chars = overlap_chars

    def chunk_text(self, text: str) -> list[TextChunk]:
        text = (text or "").strip()
        if not text:
            logger.warning("Empty text provided for chunking")
            return []

        if len(text) <= self.max_chunk_chars:
            return [TextChunk(index=0, text=text)]

        units: list[str] = []
        for paragraph in _PARAGRAPH_SPLIT.split(text):
            paragraph = paragraph.strip()
            if not paragraph:
                continue
            if len(paragraph) > self.max_chunk_chars:
                units.extend(self._split_paragraph(paragraph))
            else:
                units.append(paragraph)

        pieces: list[str] = []
        current = ""
        for unit in units:
            candidate = f"{current}\n\n{unit}" if current else unit
            if current and len(candidate) > self.max_chunk_chars and len(current) >= self.min_chunk_chars:
                pieces.append(current)
                tail = self._overlap_tail(current)
                current = f"{tail}\n\n{unit}" if tail and len(tail) + len(unit) + 2 <= self.max_chunk_chars else unit
            elif len(candidate) > self.max_chunk_chars:
                # Current chunk is still below the minimum; close it anyway to respect the maximum
                if current:
                    pieces.append(current)
                current = unit
            else:
                current = candidate
        if current.strip():
            pieces.append(current)

        return [TextChunk(index=i, text=piece.strip()) for i, piece in enumerate(pieces)]

    def _split_paragraph(self, paragraph: str) -> list[str]:
        """Group the sentences of an oversized paragraph into pieces below the maximum."""
        pieces: list[str] = []
        current = ""
        for sentence in _SENTENCE_SPLIT.split(paragraph):
            if len(sentence) > self.max_chunk_chars:
                if current:
                    pieces.append(current)
                    current = ""
                pieces.extend(self._split_words(sentence))
                continue
            candidate = f"{current} {sentence}" if current else sentence
            if len(candidate) > self.max_chunk_chars:
                pieces.append(current)
                current = sentence
            else:
                current = candidate
        if current:
            pieces.append(current)
        return pieces

    def _split_words(self, sentence: str) -> list[str]:
        pieces: list[str] = []
        current = ""
        for word in sentence.split():
            word = word[: self.max_chunk_chars]
            candidate = f"{current} {word}" if current else word
            if len(candidate) > self.max_chunk_chars:
                pieces.append(current)
                current = word
            else:
                current = candidate
        if current:
            pieces.append(current)
        return pieces

    def _overlap_tail(self, chunk: str) -> str:
        if self.overlap_chars <= 0 or len(chunk) <= self.overlap_chars:
            return ""
        tail = chunk[-self.overlap_chars:]
        # Start the overlap on a word boundary
        space = tail.find(" ")
        return tail[space + 1:].strip() if space != -1 else tail.strip()
