"""
nuggets: adaptive learning content pipeline.

Source files and web pages flow through a durable job queue into small
content units ("nuggets") with metadata, embeddings and optional media, then
into a narrative graph that learning sessions traverse adaptively.
"""

__version__ = "1.0.0"
