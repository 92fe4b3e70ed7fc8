"""
Image generation for nuggets (OpenAI Images API).

Generated images are downloaded with httpx and saved under
``{storage_path}/images/{organization_id}/{nugget_id}.png``; the stored
``image_url`` is the path relative to the storage root.
"""

from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import Any

import httpx
import openai
from loguru import logger

from nuggets.exceptions import TransientError, ValidationError
from nuggets.usage import log_usage


class ImageGenerator:
    """Generate illustrative images for content units."""

    def __init__(
        self,
        api_key: str | None,
        storage_path: str | Path = "./storage",
        model: str = "dall-e-3",
        size: str = "1024x1024",
        client: Any = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key
        self.storage_path = Path(storage_path)
        self.model = model
        self.size = size
        self._client = client
        self._http_client = http_client

    @property
    def client(self):
        """Lazy-load OpenAI client."""
        if self._client is None:
            if not self.api_key:
                raise ValidationError("OPENAI_API_KEY is not set")
            self._client = openai.AsyncOpenAI(api_key=self.api_key)
        return self._client

    @staticmethod
    def build_prompt(content: str, topics: list[str]) -> str:
        """Visual description from the leading topics and a content preview."""
        topic_phrase = ", ".join(topics[:3]) if topics else "learning concept"
        preview = re.sub(r"\s+", " ", content[:200]).strip()[:100]
        return (
            f"Educational illustration showing: {topic_phrase}. "
            "Style: clean, modern, informative diagram or visual representation. "
            f"Content theme: {preview}..."
        )

    async def generate_image(self, prompt: str, nugget_id: str, organization_id: str) -> str:
        """
        Generate and save one image.

        Returns:
            Path of the saved image relative to the storage root.
        """
        logger.info("Generating image for nugget {}", nugget_id)
        try:
            response = await self.client.images.generate(
                model=self.model,
                prompt=prompt,
                n=1,
                size=self.size,
                response_format="url",
            )
        except openai.OpenAIError as e:
            raise TransientError(f"Image generation failed: {e}") from e

        image_url = response.data[0].url if response.data else None
        if not image_url:
            raise TransientError("No image URL returned from image generation")
        log_usage("image-generation", self.model, organization_id, images=1)

        content = await self._download(image_url)
        relative = Path("images") / organization_id / f"{nugget_id}.png"
        await asyncio.to_thread(self._write, self.storage_path / relative, content)
        logger.info("Image saved for nugget {}: {}", nugget_id, relative)
        return relative.as_posix()

    async def _download(self, url: str) -> bytes:
        try:
            if self._http_client is not None:
                response = await self._http_client.get(url)
            else:
                async with httpx.AsyncClient(timeout=60.0) as http:
                    response = await http.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise TransientError(f"Failed to download image: {e}") from e
        return response.content

    @staticmethod
    def _write(path: Path, content: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
