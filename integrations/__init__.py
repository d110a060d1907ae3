"""Capability interfaces for external collaborators.

Covers:
- Feedback classification and embedding
- Test and fix generation
- Code host operations (issues, branches, pull requests)
- Embedding database
- Author notifications
"""

from .base import (
    CodeContext,
    CodeGenerator,
    CodeHost,
    EmbeddingDatabase,
    FeedbackAnalyzer,
    IssueRef,
    Notifier,
    PullRequestRef,
    SimilarityHit,
)

__all__ = [
    "CodeContext",
    "CodeGenerator",
    "CodeHost",
    "EmbeddingDatabase",
    "FeedbackAnalyzer",
    "IssueRef",
    "Notifier",
    "PullRequestRef",
    "SimilarityHit",
]
