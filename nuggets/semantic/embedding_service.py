"""
Embedding Service - compute, store and search nugget embeddings.

Vectors are stored as float32 bytes on the nugget row. Similarity search is
organization-scoped, considers only ``ready`` nuggets with a stored vector and
uses cosine similarity computed with numpy.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

import numpy as np
from loguru import logger
from sqlalchemy import select

from nuggets.db.database import Database
from nuggets.db.models import Nugget, NuggetStatus
from nuggets.db.models.base import utcnow
from nuggets.exceptions import EmbeddingError, EmptyEmbeddingError, NotFoundError
from nuggets.semantic.providers import EmbeddingProvider


@dataclass
class EmbeddingResult:
    """Result of embedding generation for a single text."""

    embedding: np.ndarray
    model_name: str
    generated_at: datetime

    def to_bytes(self) -> bytes:
        """Convert embedding to bytes for database storage."""
        return self.embedding.astype(np.float32).tobytes()

    @property
    def dimension(self) -> int:
        return len(self.embedding)


@dataclass
class SimilarNugget:
    """A similarity search hit."""

    nugget: Nugget
    similarity: float


def from_bytes(data: bytes) -> np.ndarray:
    """Deserialize an embedding from database storage."""
    return np.frombuffer(data, dtype=np.float32)


def cosine_similarity(emb1: np.ndarray, emb2: np.ndarray) -> float:
    """
    Calculate cosine similarity between two embeddings.

    Returns 0.0 when either vector has zero norm.
    """
    norm = float(np.linalg.norm(emb1) * np.linalg.norm(emb2))
    if norm == 0.0:
        return 0.0
    return float(np.dot(emb1, emb2) / norm)


class EmbeddingService:
    """
    Generate, store and search nugget embeddings.

    Example:
        >>> service = EmbeddingService(db, provider)
        >>> await service.generate_and_store(nugget_id, "What is TCP?")
        >>> hits = await service.find_similar_to_text("transport protocols", org_id)
    """

    def __init__(
        self,
        db: Database,
        provider: EmbeddingProvider,
        dimension: int | None = 384,
        default_threshold: float = 0.7,
        default_limit: int = 20,
    ):
        self.db = db
        self.provider = provider
        self.dimension = dimension
        self.default_threshold = default_threshold
        self.default_limit = default_limit

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        """
        Embed a text.

        Raises:
            EmptyEmbeddingError: empty input or provider returned no values
            EmbeddingError: vector dimension does not match the configured one
        """
        if not text or not text.strip():
            raise EmptyEmbeddingError("Cannot embed empty text")

        vector = await self.provider.embed(text)
        if vector is None or len(vector) == 0:
            raise EmptyEmbeddingError(f"Provider {self.provider.model_name} returned an empty embedding")

        embedding = np.asarray(vector, dtype=np.float32)
        if self.dimension and embedding.shape[0] != self.dimension:
            raise EmbeddingError(
                f"Embedding dimension mismatch: expected {self.dimension}, got {embedding.shape[0]}"
            )
        return EmbeddingResult(embedding=embedding, model_name=self.provider.model_name, generated_at=utcnow())

    async def generate_and_store(self, nugget_id: str, content: str) -> Nugget:
        """Embed a nugget's content, store the vector and mark the nugget ready."""
        result = await self.generate_embedding(content)
        async with self.db.session_scope() as session:
            nugget = await session.get(Nugget, nugget_id)
            if nugget is None:
                raise NotFoundError("Nugget", nugget_id)
            nugget.embedding = result.to_bytes()
            nugget.embedding_model = result.model_name
            nugget.embedding_generated_at = result.generated_at
            nugget.status = NuggetStatus.READY

        logger.info("Stored {}-dim embedding for nugget {}", result.dimension, nugget_id)
        return nugget

    async def find_similar(
        self,
        query_vector: Sequence[float] | np.ndarray,
        organization_id: str,
        threshold: float | None = None,
        limit: int | None = None,
        exclude_ids: Sequence[str] = (),
    ) -> list[SimilarNugget]:
        """
        Find ready nuggets in an organization similar to a query vector.

        Only hits with similarity strictly above ``threshold`` are returned,
        sorted by similarity descending.
        """
        threshold = self.default_threshold if threshold is None else threshold
        limit = self.default_limit if limit is None else limit
        query = np.asarray(query_vector, dtype=np.float32)
        if query.size == 0:
            raise EmptyEmbeddingError("Query vector is empty")

        async with self.db.session_scope() as session:
            rows = await session.execute(
                select(Nugget).where(
                    Nugget.organization_id == organization_id,
                    Nugget.status == NuggetStatus.READY,
                    Nugget.embedding.is_not(None),
                )
            )
            excluded = set(exclude_ids)
            nuggets = [n for n in rows.scalars().all() if n.id not in excluded]

        hits: list[SimilarNugget] = []
        for nugget in nuggets:
            vector = from_bytes(nugget.embedding)
            if vector.shape != query.shape:
                logger.warning("Skipping nugget {}: embedding dimension {} != {}", nugget.id, vector.shape[0], query.shape[0])
                continue
            similarity = cosine_similarity(query, vector)
            if similarity > threshold:
                hits.append(SimilarNugget(nugget=nugget, similarity=similarity))

        hits.sort(key=lambda h: (-h.similarity, h.nugget.id))
        return hits[:limit]

    async def find_similar_to_text(
        self,
        text: str,
        organization_id: str,
        threshold: float | None = None,
        limit: int | None = None,
    ) -> list[SimilarNugget]:
        result = await self.generate_embedding(text)
        return await self.find_similar(result.embedding, organization_id, threshold, limit)

    @staticmethod
    def similarities(source: Nugget, candidates: Sequence[Nugget]) -> dict[str, float]:
        """Cosine similarity from ``source`` to each candidate nugget that has a compatible vector."""
        if source.embedding is None:
            return {}
        base = from_bytes(source.embedding)
        scores: dict[str, float] = {}
        for candidate in candidates:
            if candidate.embedding is None:
                continue
            vector = from_bytes(candidate.embedding)
            if vector.shape == base.shape:
                scores[candidate.id] = cosine_similarity(base, vector)
        return scores
