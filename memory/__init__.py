"""Embedding storage for feedback similarity.

This module provides:
- EmbeddingStore: NumPy-backed reference EmbeddingDatabase
- cosine_similarity: Vector similarity used by the cluster engine
"""

from .store import EmbeddingStore, cosine_similarity

__all__ = [
    "EmbeddingStore",
    "cosine_similarity",
]
