"""Schemas module for pipeline records.

Provides Pydantic models for:
- Feedback items, classifications and clusters
- Change requests, validation reports and status history
- Notification ledger entries
- Checkpoint snapshots
"""

from .change_request import (
    TERMINAL_STATUSES,
    AwaitingSignal,
    ChangeRequest,
    ChangeRequestStatus,
    FileChange,
    FileOperation,
    GeneratedChange,
    StageName,
    StageReport,
    StageStatus,
    StatusTransition,
    ValidationReport,
)
from .feedback import (
    Category,
    Classification,
    ClusterStatus,
    EngagementMetrics,
    ExtractedFields,
    FeedbackCluster,
    FeedbackItem,
    FrozenClusterError,
)
from .notification import (
    NotificationLedgerEntry,
    NotificationResult,
    NotificationStatus,
)
from .pipeline_state import Checkpoint, PipelineSnapshot, QueueEntry

__all__ = [
    "TERMINAL_STATUSES",
    "AwaitingSignal",
    "ChangeRequest",
    "ChangeRequestStatus",
    "FileChange",
    "FileOperation",
    "GeneratedChange",
    "StageName",
    "StageReport",
    "StageStatus",
    "StatusTransition",
    "ValidationReport",
    "Category",
    "Classification",
    "ClusterStatus",
    "EngagementMetrics",
    "ExtractedFields",
    "FeedbackCluster",
    "FeedbackItem",
    "FrozenClusterError",
    "NotificationLedgerEntry",
    "NotificationResult",
    "NotificationStatus",
    "Checkpoint",
    "PipelineSnapshot",
    "QueueEntry",
]
