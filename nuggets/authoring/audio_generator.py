"""Audio narration for nuggets (OpenAI text-to-speech)."""

from __future__ import annotations

import asyncio
import math
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import openai
from loguru import logger

from nuggets.exceptions import TransientError, ValidationError
from nuggets.usage import log_usage

WORDS_PER_SECOND = 2.5


@dataclass
class AudioScript:
    """Narration script for one nugget."""

    script: str
    word_count: int
    estimated_duration: int  # seconds


def format_for_audio(content: str) -> str:
    """Strip markdown and turn paragraph breaks into spoken pauses."""
    formatted = re.sub(r"#{1,6}\s+", "", content)
    formatted = re.sub(r"\*\*(.+?)\*\*", r"\1", formatted)
    formatted = re.sub(r"\*(.+?)\*", r"\1", formatted)
    formatted = re.sub(r"\[(.+?)\]\(.+?\)", r"\1", formatted)
    formatted = re.sub(r"`(.+?)`", r"\1", formatted)
    formatted = re.sub(r"\n\s*\n+", ". ", formatted)
    formatted = re.sub(r"\.\s*\.", ".", formatted)
    return re.sub(r"\s+", " ", formatted).strip()


class AudioGenerator:
    """Generate narrated audio for content units."""

    def __init__(
        self,
        api_key: str | None,
        storage_path: str | Path = "./storage",
        model: str = "tts-1",
        voice: str = "alloy",
        client: Any = None,
    ):
        self.api_key = api_key
        self.storage_path = Path(storage_path)
        self.model = model
        self.voice = voice
        self._client = client

    @property
    def client(self):
        """Lazy-load OpenAI client."""
        if self._client is None:
            if not self.api_key:
                raise ValidationError("OPENAI_API_KEY is not set")
            self._client = openai.AsyncOpenAI(api_key=self.api_key)
        return self._client

    def build_script(self, content: str) -> AudioScript:
        script = format_for_audio(content)
        word_count = len(script.split())
        return AudioScript(
            script=script,
            word_count=word_count,
            estimated_duration=math.ceil(word_count / WORDS_PER_SECOND),
        )

    async def generate_audio(self, script: str, nugget_id: str, organization_id: str) -> str:
        """
        Synthesize and save narration.

        Returns:
            Path of the saved MP3 relative to the storage root.
        """
        if not script.strip():
            raise ValidationError(f"Nugget {nugget_id} has no narratable content")

        logger.info("Generating audio for nugget {} ({} chars)", nugget_id, len(script))
        try:
            response = await self.client.audio.speech.create(model=self.model, voice=self.voice, input=script)
        except openai.OpenAIError as e:
            raise TransientError(f"Speech synthesis failed: {e}") from e
        log_usage("audio-generation", self.model, organization_id, characters=len(script))

        relative = Path("audio") / organization_id / f"{nugget_id}.mp3"
        await asyncio.to_thread(self._write, self.storage_path / relative, response.content)
        logger.info("Audio saved for nugget {}: {}", nugget_id, relative)
        return relative.as_posix()

    @staticmethod
    def _write(path: Path, content: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
