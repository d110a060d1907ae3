"""Feedback schemas.

Feedback items arrive from the ingestion collaborator, are classified
once (re-classification supersedes, never mutates) and are grouped into
clusters by the cluster engine.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


class Category(str, Enum):
    """Feedback category."""

    BUG = "bug"
    FEATURE_REQUEST = "feature_request"
    DISCUSSION = "discussion"


class ClusterStatus(str, Enum):
    """Cluster lifecycle status."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    IMPLEMENTED = "implemented"


class EngagementMetrics(BaseModel):
    """Engagement counters captured at ingestion time."""

    model_config = ConfigDict(frozen=True)

    likes: int = Field(0, ge=0, description="Like count")
    replies: int = Field(0, ge=0, description="Reply count")
    reposts: int = Field(0, ge=0, description="Repost count")
    views: int = Field(0, ge=0, description="View count")


class FeedbackItem(BaseModel):
    """A single piece of user feedback. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Source-assigned identifier")
    author: str = Field(..., description="Author handle")
    text: str = Field(..., description="Feedback text")
    timestamp: datetime = Field(default_factory=utcnow, description="When it was posted")
    engagement: EngagementMetrics = Field(
        default_factory=EngagementMetrics,
        description="Engagement metrics",
    )
    source_url: str = Field("", description="Link to the original post")
    reply_to: str | None = Field(None, description="Id of the post this replies to")


class ExtractedFields(BaseModel):
    """Structured fields pulled out of feedback text.

    Closed schema with a version number; unknown keys go into
    ``extensions`` instead of widening the schema.
    """

    model_config = ConfigDict(frozen=True)

    schema_version: int = Field(1, description="Schema version")
    title: str | None = Field(None, description="Short issue title")
    summary: str | None = Field(None, description="One-paragraph summary")
    affected_area: str | None = Field(None, description="Product area or path")
    reproduction_steps: tuple[str, ...] = Field(
        default_factory=tuple,
        description="Steps to reproduce (bugs only)",
    )
    extensions: dict[str, str] = Field(
        default_factory=dict,
        description="Forward-compatible extra fields",
    )


class Classification(BaseModel):
    """Classification attached 1:1 to a feedback item."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id, description="Classification id")
    feedback_id: str = Field(..., description="Classified feedback item")
    category: Category = Field(..., description="Category")
    severity: float = Field(..., ge=0, le=100, description="Severity 0-100")
    confidence: float = Field(..., ge=0, le=1, description="Confidence 0-1")
    reasoning: str = Field("", description="Why this classification")
    embedding: tuple[float, ...] = Field(
        default_factory=tuple,
        description="Embedding vector (empty if not yet embedded)",
    )
    extracted: ExtractedFields = Field(
        default_factory=ExtractedFields,
        description="Extracted structured fields",
    )
    supersedes: str | None = Field(None, description="Prior classification id")
    created_at: datetime = Field(default_factory=utcnow)

    def reclassify(self, **changes: Any) -> "Classification":
        """Produce a new classification that supersedes this one."""
        data = self.model_dump()
        data.update(changes)
        data["id"] = new_id()
        data["supersedes"] = self.id
        data["created_at"] = utcnow()
        return Classification.model_validate(data)

    def with_embedding(self, embedding: list[float] | tuple[float, ...]) -> "Classification":
        return self.reclassify(embedding=tuple(float(v) for v in embedding))


class FrozenClusterError(ValueError):
    """Membership change attempted on an approved or rejected cluster."""


class FeedbackCluster(BaseModel):
    """Group of feedback items concerning the same underlying issue."""

    id: str = Field(default_factory=new_id, description="Cluster id")
    category: Category = Field(..., description="Plurality category")
    member_ids: list[str] = Field(default_factory=list, description="Member feedback ids")
    member_severities: dict[str, float] = Field(
        default_factory=dict,
        description="Severity per member",
    )
    member_categories: dict[str, Category] = Field(
        default_factory=dict,
        description="Category per member",
    )
    average_severity: float = Field(0.0, ge=0, le=100, description="Mean member severity")
    common_theme: str = Field("", description="Shared theme")
    representative_id: str = Field(..., description="Representative feedback id")
    representative_embedding: list[float] = Field(
        default_factory=list,
        description="Embedding compared against new items",
    )
    status: ClusterStatus = Field(ClusterStatus.PENDING, description="Lifecycle status")

    # Links (one-directional: the cluster owns the change request id)
    issue_number: int | None = Field(None, description="Originating issue number")
    change_request_id: str | None = Field(None, description="Active change request")
    scope: list[str] = Field(
        default_factory=list,
        description="Directories the change may write to",
    )
    repo: str = Field("", description="Target repository")

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("member_ids")
    @classmethod
    def _unique_members(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))

    @property
    def frozen(self) -> bool:
        return self.status in (ClusterStatus.APPROVED, ClusterStatus.REJECTED)

    @property
    def size(self) -> int:
        return len(self.member_ids)

    def add_member(self, feedback_id: str, severity: float, category: Category) -> bool:
        """Add a member and recompute aggregates.

        Returns:
            False if the item was already a member

        Raises:
            FrozenClusterError: If the cluster is finalized
        """
        if self.frozen:
            raise FrozenClusterError(f"Cluster {self.id} is {self.status.value}")
        if feedback_id in self.member_severities:
            return False
        self.member_ids.append(feedback_id)
        self.member_severities[feedback_id] = float(severity)
        self.member_categories[feedback_id] = category
        self.recompute()
        return True

    def recompute(self) -> None:
        """Recompute average severity and plurality category."""
        if not self.member_ids:
            self.average_severity = 0.0
            return
        values = [self.member_severities[m] for m in self.member_ids]
        mean = sum(values) / len(values)
        self.average_severity = min(100.0, max(0.0, mean))

        counts: dict[Category, int] = {}
        for member in self.member_ids:
            cat = self.member_categories[member]
            counts[cat] = counts.get(cat, 0) + 1
        top = max(counts.values())
        tied = {cat for cat, n in counts.items() if n == top}
        if len(tied) == 1:
            self.category = tied.pop()
        else:
            # Highest-severity member among the tied categories; earliest wins ties
            best = None
            for member in self.member_ids:
                if self.member_categories[member] not in tied:
                    continue
                if best is None or self.member_severities[member] > self.member_severities[best]:
                    best = member
            self.category = self.member_categories[best]
        self.updated_at = utcnow()

    def set_status(self, status: ClusterStatus) -> None:
        self.status = status
        self.updated_at = utcnow()
