"""
Semantic embeddings for nuggets.

Technology:
- sentence-transformers (all-MiniLM-L6-v2, 384-dim) or Gemini embeddings
- numpy cosine similarity over float32 vectors stored with each nugget
"""

from nuggets.semantic.embedding_service import EmbeddingResult, EmbeddingService, SimilarNugget
from nuggets.semantic.providers import EmbeddingProvider, create_embedding_provider

__all__ = [
    "EmbeddingProvider",
    "EmbeddingResult",
    "EmbeddingService",
    "SimilarNugget",
    "create_embedding_provider",
]
