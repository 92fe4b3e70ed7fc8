"""
Slide decks for nuggets (Gemini text generation).

The model is asked for a JSON deck of 3-7 slides. When the reply is not
usable JSON the text is split on heading-like lines instead, and as a last
resort the nugget becomes a single slide.
"""

from __future__ import annotations

import asyncio
import json
import math
import re
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field

from nuggets.exceptions import TransientError, ValidationError
from nuggets.usage import estimate_tokens, log_usage

MINUTES_PER_SLIDE = 1.5
FALLBACK_CONTENT_CHARS = 500

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)
_TITLE_MARKERS = (
    re.compile(r"^#+\s+"),
    re.compile(r"^Slide\s+\d+\s*[:\-]\s*", re.IGNORECASE),
    re.compile(r"^\d+\.\s+"),
)


class Slide(BaseModel):
    title: str
    content: str = ""
    order: int = Field(..., ge=1)


class SlideDeck(BaseModel):
    """Slides plus the summary stored beside them."""

    slides: list[Slide]
    total_slides: int
    estimated_minutes: int

    @classmethod
    def from_slides(cls, slides: list[Slide]) -> SlideDeck:
        return cls(
            slides=slides,
            total_slides=len(slides),
            estimated_minutes=math.ceil(len(slides) * MINUTES_PER_SLIDE),
        )


def parse_slides(text: str, fallback_content: str) -> list[Slide]:
    """Slides from a model reply; never empty."""
    match = _JSON_OBJECT.search(text)
    if match:
        try:
            raw = json.loads(match.group(0)).get("slides")
        except (json.JSONDecodeError, AttributeError):
            logger.warning("Slide reply is not valid JSON, splitting on headings")
            raw = None
        if isinstance(raw, list) and raw:
            return [
                Slide(
                    title=str(item.get("title") or f"Slide {i}"),
                    content=str(item.get("content") or ""),
                    order=i,
                )
                for i, item in enumerate((r for r in raw if isinstance(r, dict)), start=1)
            ] or split_slides(text, fallback_content)
    return split_slides(text, fallback_content)


def split_slides(text: str, fallback_content: str) -> list[Slide]:
    """
    Split free text into slides.

    A line starts a new slide when it carries a title marker (markdown
    heading, ``Slide N:``, ``N.``) or is a short line without a period.
    """
    sections: list[tuple[str, list[str]]] = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        marked = any(marker.match(line) for marker in _TITLE_MARKERS)
        if marked or (len(line) < 100 and "." not in line):
            title = line
            for marker in _TITLE_MARKERS:
                title = marker.sub("", title)
            sections.append((title, []))
        elif sections:
            sections[-1][1].append(line)

    if not sections:
        return [Slide(title="Learning Content", content=fallback_content[:FALLBACK_CONTENT_CHARS], order=1)]
    return [Slide(title=title, content="\n".join(body), order=i) for i, (title, body) in enumerate(sections, start=1)]


class SlideGenerator:
    """Generate slide decks for content units."""

    def __init__(self, api_key: str | None, model: str = "gemini-2.0-flash", client: Any = None):
        self.api_key = api_key
        self.model = model
        self._client = client

    @property
    def client(self):
        """Lazy-load the Gemini model."""
        if self._client is None:
            if not self.api_key:
                raise ValidationError("GEMINI_API_KEY is not set")
            import google.generativeai as genai

            genai.configure(api_key=self.api_key)
            self._client = genai.GenerativeModel(self.model)
        return self._client

    @staticmethod
    def build_prompt(content: str, topics: list[str], difficulty: int | None = None) -> str:
        return (
            "You are an expert educational content creator. "
            "Generate a slide deck for the following learning content.\n\n"
            f"Content:\n{content}\n\n"
            f"Topics: {', '.join(topics) or 'General'}\n"
            f"Difficulty Level: {difficulty or 5}/10\n\n"
            "Requirements:\n"
            "1. Create 3-7 slides that break the content into digestible chunks\n"
            "2. Each slide has a clear title and concise content\n"
            "3. Use bullet points or short paragraphs\n"
            "4. Progress logically from introduction to conclusion\n\n"
            'Respond with JSON only: {"slides": [{"title": "...", "content": "...", "order": 1}]}'
        )

    async def generate_slides(
        self,
        content: str,
        organization_id: str,
        topics: list[str] | None = None,
        difficulty: int | None = None,
    ) -> SlideDeck:
        if not content.strip():
            raise ValidationError("Cannot build slides from empty content")

        prompt = self.build_prompt(content, topics or [], difficulty)
        try:
            response = await asyncio.to_thread(self.client.generate_content, prompt)
            text = response.text
        except ValidationError:
            raise
        except Exception as e:  # Provider/network failures are retried by the job policy
            raise TransientError(f"Slide generation failed: {e}") from e

        usage = getattr(response, "usage_metadata", None)
        log_usage(
            "slide-generation",
            self.model,
            organization_id,
            input_tokens=getattr(usage, "prompt_token_count", None) or estimate_tokens(prompt),
            output_tokens=getattr(usage, "candidates_token_count", None) or estimate_tokens(text),
        )

        deck = SlideDeck.from_slides(parse_slides(text, content))
        logger.info("Generated {} slides ({} min)", deck.total_slides, deck.estimated_minutes)
        return deck
