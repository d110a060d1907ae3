"""Capability interfaces consumed by the orchestration core.

Concrete adapters (LLM providers, GitHub, vector databases, messaging
platforms) live outside this package. The core only sees these
interfaces, and every call to them goes through the resilient gateway.

Adapters signal failures with the taxonomy in ``tools.errors``:
raise ``TransientToolError`` (or builtin ``TimeoutError`` /
``ConnectionError``) for retryable problems and ``PermanentToolError``
for everything else.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from schemas.change_request import FileChange, GeneratedChange
from schemas.feedback import Classification, FeedbackItem


@dataclass
class IssueRef:
    """Identifier of an issue created on the code host."""

    number: int
    url: str = ""


@dataclass
class PullRequestRef:
    """Identifier of a pull request on the code host."""

    number: int
    branch: str
    url: str = ""


@dataclass
class SimilarityHit:
    """One search result from the embedding database."""

    id: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class CodeContext:
    """Context handed to the code generator."""

    repo: str
    scope: list[str] = field(default_factory=list)
    files: dict[str, str] = field(default_factory=dict)
    test_cases: list[str] = field(default_factory=list)


class FeedbackAnalyzer(ABC):
    """Classification and embedding capability."""

    @abstractmethod
    def classify(self, item: FeedbackItem) -> Classification:
        """Classify a feedback item.

        Returns:
            Classification with category, severity [0,100],
            confidence [0,1], reasoning, embedding and extracted fields
        """
        ...

    @abstractmethod
    def embed(self, text: str) -> list[float]:
        """Return a fixed-length embedding vector for text."""
        ...


class CodeGenerator(ABC):
    """Test and implementation generation capability."""

    @abstractmethod
    def generate_tests(self, summary: str, context: CodeContext) -> GeneratedChange:
        """Produce tests that reproduce the issue (they must fail first)."""
        ...

    @abstractmethod
    def implement_fix(self, summary: str, context: CodeContext) -> GeneratedChange:
        """Produce the implementation that makes the tests pass."""
        ...


class CodeHost(ABC):
    """Issue, branch and pull request operations."""

    @abstractmethod
    def create_issue(self, repo: str, title: str, body: str, labels: list[str]) -> IssueRef:
        ...

    @abstractmethod
    def create_branch(self, repo: str, branch: str, changes: list[FileChange], message: str) -> None:
        """Create ``branch`` off the default branch with ``changes`` committed on it.

        Writes carry the full new file content; deletes remove the file.
        """
        ...

    @abstractmethod
    def create_pull_request(
        self,
        repo: str,
        branch: str,
        title: str,
        body: str,
        issue_number: int | None,
    ) -> PullRequestRef:
        ...

    @abstractmethod
    def find_pull_request(self, repo: str, branch: str) -> PullRequestRef | None:
        """Look up an open PR for a branch (used on re-entry)."""
        ...

    @abstractmethod
    def is_merged(self, repo: str, pr_number: int) -> bool:
        """Merge confirmation query issued before any merge retry."""
        ...

    @abstractmethod
    def merge_pull_request(self, repo: str, pr_number: int) -> None:
        ...


class EmbeddingDatabase(ABC):
    """Vector storage capability."""

    @abstractmethod
    def store_embedding(
        self,
        item_id: str,
        vector: list[float],
        metadata: dict[str, Any] | None = None,
    ) -> None:
        ...

    @abstractmethod
    def search_similar(
        self,
        vector: list[float],
        limit: int = 10,
        threshold: float = 0.0,
    ) -> list[SimilarityHit]:
        """Return hits with score >= threshold, highest score first."""
        ...


class Notifier(ABC):
    """Sends the resolved-feedback message to a feedback author."""

    @abstractmethod
    def send(self, item: FeedbackItem, pr_number: int, message: str) -> None:
        ...
