"""Notification ledger schema."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from .feedback import new_id, utcnow


class NotificationStatus(str, Enum):
    """Outcome of one notification attempt."""

    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class NotificationLedgerEntry(BaseModel):
    """One recorded notification attempt.

    At most one ``sent`` entry exists per (feedback_id, pr_number).
    """

    id: str = Field(default_factory=new_id)
    feedback_id: str = Field(..., description="Notified feedback item")
    pr_number: int = Field(..., description="Merged PR that resolved it")
    status: NotificationStatus = Field(..., description="Attempt outcome")
    timestamp: datetime = Field(default_factory=utcnow)
    detail: str = Field("", description="Failure or skip reason")

    @property
    def key(self) -> tuple[str, int]:
        return (self.feedback_id, self.pr_number)


class NotificationResult(BaseModel):
    """Summary of one notify() invocation."""

    pr_number: int
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    already_notified: int = 0
    entries: list[NotificationLedgerEntry] = Field(default_factory=list)
