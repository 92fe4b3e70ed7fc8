"""
Embedding providers.

Two backends produce the same contract (text in, vector out):
- local sentence-transformers model (default, all-MiniLM-L6-v2, 384-dim)
- Google Gemini embedding API

Both are lazy-loaded on first use to avoid startup delays.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

from loguru import logger

from nuggets.config import Settings
from nuggets.exceptions import TransientError, ValidationError
from nuggets.usage import estimate_tokens, log_usage


class EmbeddingProvider(Protocol):
    """Produce one embedding vector per text."""

    model_name: str

    async def embed(self, text: str) -> list[float]: ...


class SentenceTransformerEmbeddingProvider:
    """
    Local sentence-transformers embeddings.

    The model is downloaded from HuggingFace Hub on first run (~90MB).
    Encoding runs in a worker thread so it never blocks the event loop.
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self.model_name = model_name
        self._model: Any = None

    @property
    def model(self):
        """Lazy load the model on first use."""
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info("Loading embedding model: {}", self.model_name)
            self._model = SentenceTransformer(self.model_name)
            logger.info("Embedding model loaded: {}", self.model_name)
        return self._model

    async def embed(self, text: str) -> list[float]:
        embedding = await asyncio.to_thread(self.model.encode, text, convert_to_numpy=True)
        return embedding.tolist()


class GeminiEmbeddingProvider:
    """Gemini embeddings via google-generativeai."""

    def __init__(self, api_key: str, model_name: str = "models/text-embedding-004"):
        self.api_key = api_key
        self.model_name = model_name
        self._client: Any = None

    @property
    def client(self):
        """Lazy-load Gemini client."""
        if self._client is None:
            import google.generativeai as genai

            genai.configure(api_key=self.api_key)
            self._client = genai
        return self._client

    async def embed(self, text: str) -> list[float]:
        try:
            result = await asyncio.to_thread(
                self.client.embed_content,
                model=self.model_name,
                content=text,
                task_type="retrieval_document",
            )
        except Exception as e:  # Provider/network failures are retried by the job policy
            raise TransientError(f"Gemini embedding request failed: {e}") from e
        log_usage("embedding", self.model_name, input_tokens=estimate_tokens(text))
        return list(result["embedding"])


def create_embedding_provider(settings: Settings) -> EmbeddingProvider:
    """Build the provider selected by ``embedding_provider``."""
    if settings.embedding_provider == "gemini":
        if not settings.has_gemini_configured():
            raise ValidationError("GEMINI_API_KEY is required for the gemini embedding provider")
        return GeminiEmbeddingProvider(settings.gemini_api_key, settings.gemini_embedding_model)
    return SentenceTransformerEmbeddingProvider(settings.embedding_model)
