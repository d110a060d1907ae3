"""Human decision signals.

File-based approvals for asynchronous workflows: the CLI (or any other
front end) drops a JSON signal into ``<state_dir>/signals/`` and the
orchestrator picks it up on its next tick. Waiting for a decision is a
durable state on the change request, never a blocked thread, so a
restart loses nothing.
"""

import logging
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from schemas.feedback import new_id, utcnow

from .checkpoints import atomic_write_text

logger = logging.getLogger(__name__)


class ApprovalResult(str, Enum):
    """Result of an approval decision."""

    APPROVED = "approved"
    REJECTED = "rejected"


class SignalKind(str, Enum):
    CLUSTER_DECISION = "cluster_decision"  # target: cluster id
    DELETION_APPROVAL = "deletion_approval"  # target: change request id
    REVIEW = "review"  # target: change request id
    CANCEL = "cancel"  # target: change request id


class Signal(BaseModel):
    """A human decision addressed to a cluster or change request."""

    id: str = Field(default_factory=new_id)
    kind: SignalKind = Field(..., description="What is being decided")
    target_id: str = Field(..., description="Cluster or change request id")
    result: ApprovalResult = Field(ApprovalResult.APPROVED)
    token: str | None = Field(None, description="Resumption token, if known")
    actor: str = Field("user", description="Who decided")
    notes: str | None = Field(None, description="Reviewer notes or reason")
    scope: list[str] = Field(
        default_factory=list,
        description="Approved directory scope (cluster approvals)",
    )
    created_at: str = Field(default_factory=lambda: utcnow().isoformat())

    @property
    def approved(self) -> bool:
        return self.result == ApprovalResult.APPROVED


class SignalInbox:
    """Durable inbox of pending signals."""

    def __init__(self, state_dir: Path | str) -> None:
        self.directory = Path(state_dir) / "signals"
        self.processed_dir = self.directory / "processed"
        self.directory.mkdir(parents=True, exist_ok=True)
        self.processed_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, signal: Signal) -> Path:
        stamp = signal.created_at.replace(":", "").replace("-", "").replace("+", "")
        return self.directory / f"{stamp}-{signal.id}.json"

    def submit(self, signal: Signal) -> Path:
        path = self._path(signal)
        atomic_write_text(path, signal.model_dump_json(indent=2))
        logger.info(f"SIGNAL: {signal.kind.value} {signal.result.value} for {signal.target_id[:8]}")
        return path

    def pending(self) -> list[Signal]:
        """Unprocessed signals, oldest first. Malformed files are set aside."""
        signals = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                signals.append(Signal.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, ValidationError, ValueError) as e:
                logger.warning(f"SIGNAL: ignoring malformed signal {path.name}: {e}")
                path.replace(self.processed_dir / f"{path.name}.invalid")
        return signals

    def acknowledge(self, signal: Signal) -> None:
        """Move a handled signal out of the inbox."""
        path = self._path(signal)
        if path.exists():
            path.replace(self.processed_dir / path.name)
