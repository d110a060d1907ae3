"""Feedback clustering.

Groups classified feedback items whose embeddings are close enough to
describe the same underlying issue.
"""

from .engine import DEFAULT_SIMILARITY_THRESHOLD, ClusterEngine, DeadLetter

__all__ = [
    "DEFAULT_SIMILARITY_THRESHOLD",
    "ClusterEngine",
    "DeadLetter",
]
