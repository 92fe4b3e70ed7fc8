"""
Content ingestion: source watchers, text extraction, chunking, metadata and
nugget assembly.
"""

from nuggets.ingestion.chunker import SemanticChunker, TextChunk
from nuggets.ingestion.metadata_extractor import MetadataExtractor, NuggetMetadata

__all__ = [
    "MetadataExtractor",
    "NuggetMetadata",
    "SemanticChunker",
    "TextChunk",
]
