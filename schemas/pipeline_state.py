"""Pipeline state schema.

Checkpoint snapshots used for crash recovery. The latest checkpoint is
the only source of truth on restart.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .change_request import ChangeRequest
from .feedback import FeedbackCluster, FeedbackItem, new_id, utcnow
from .notification import NotificationLedgerEntry


class QueueEntry(BaseModel):
    """A cluster waiting in the priority work queue."""

    cluster_id: str = Field(..., description="Queued cluster")
    severity: float = Field(..., ge=0, le=100, description="Average severity at enqueue")
    sequence: int = Field(..., description="Insertion order (FIFO tie-break)")


class PipelineSnapshot(BaseModel):
    """Everything needed to resume after a crash."""

    queue: list[QueueEntry] = Field(default_factory=list, description="Queue contents")
    change_requests: list[ChangeRequest] = Field(
        default_factory=list,
        description="Non-terminal change requests",
    )
    clusters: list[FeedbackCluster] = Field(
        default_factory=list,
        description="Clusters that are not finished",
    )
    items: list[FeedbackItem] = Field(
        default_factory=list,
        description="Feedback items belonging to the snapshotted clusters",
    )
    ledger_delta: list[NotificationLedgerEntry] = Field(
        default_factory=list,
        description="Ledger entries since the previous checkpoint",
    )
    dispatched: list[str] = Field(
        default_factory=list,
        description="Cluster ids handed to a change request",
    )
    safe_mode: bool = Field(False, description="System-wide safe mode flag")
    safe_mode_reason: str | None = Field(None)


class Checkpoint(BaseModel):
    """Durable snapshot of pipeline state."""

    id: str = Field(default_factory=new_id, description="Checkpoint id")
    sequence: int = Field(..., description="Monotonic sequence number")
    timestamp: datetime = Field(default_factory=utcnow, description="Non-decreasing timestamp")
    reason: str = Field("", description="Transition that triggered the checkpoint")
    payload: PipelineSnapshot = Field(default_factory=PipelineSnapshot)

    @property
    def filename(self) -> str:
        return f"{self.sequence:08d}-{self.id}.json"

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
            "reason": self.reason,
            "queued": len(self.payload.queue),
            "change_requests": len(self.payload.change_requests),
            "safe_mode": self.payload.safe_mode,
        }
