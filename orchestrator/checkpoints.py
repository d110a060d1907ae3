"""Checkpoint store for crash recovery.

Checkpoints are JSON files written atomically (temp file, fsync,
``os.replace``) so a crash mid-write never leaves a torn snapshot:

    <state_dir>/checkpoints/
    ├── 00000001-<id>.json
    ├── 00000002-<id>.json
    └── ...

The highest sequence number is the latest checkpoint and the only
source of truth on restart.
"""

import logging
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from schemas.change_request import ChangeRequest
from schemas.feedback import utcnow
from schemas.pipeline_state import Checkpoint, PipelineSnapshot

from .locks import KeyedLocks

logger = logging.getLogger(__name__)


def atomic_write_text(path: Path, content: str) -> None:
    """Write content to path atomically."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        Path(tmp_path).unlink(missing_ok=True)
        raise


class CheckpointStore:
    """Durable snapshots of pipeline state.

    Change request records are staged per id (each under its own lock)
    and folded into the next snapshot by the orchestrator.
    """

    def __init__(self, state_dir: Path | str, retention: int = 50) -> None:
        """Initialize checkpoint store.

        Args:
            state_dir: Root state directory
            retention: Checkpoints kept by ``prune`` (the latest is always kept)
        """
        self.directory = Path(state_dir) / "checkpoints"
        self.directory.mkdir(parents=True, exist_ok=True)
        self.retention = retention
        self._write_lock = threading.Lock()
        self._record_locks = KeyedLocks()
        self._records: dict[str, ChangeRequest] = {}
        self._sequence, self._last_timestamp = self._scan_tail()

    def _scan_tail(self) -> tuple[int, datetime | None]:
        files = self._files()
        if not files:
            return 0, None
        latest = self._read(files[-1])
        sequence = int(files[-1].name.split("-", 1)[0])
        return sequence, latest.timestamp if latest else None

    def _files(self) -> list[Path]:
        return sorted(p for p in self.directory.glob("*.json") if p.name[:8].isdigit())

    def _read(self, path: Path) -> Checkpoint | None:
        try:
            return Checkpoint.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError, ValueError) as e:
            logger.warning(f"CHECKPOINT: unreadable checkpoint {path.name}: {e}")
            return None

    # Per-change-request records

    def record(self, cr: ChangeRequest) -> None:
        """Stage the current state of a change request."""
        with self._record_locks.hold(cr.id):
            if cr.is_terminal:
                self._records.pop(cr.id, None)
            else:
                self._records[cr.id] = cr.model_copy(deep=True)

    def forget(self, cr_id: str) -> None:
        with self._record_locks.hold(cr_id):
            self._records.pop(cr_id, None)

    def records(self) -> list[ChangeRequest]:
        """Staged non-terminal change requests."""
        return [cr.model_copy(deep=True) for cr in list(self._records.values())]

    # Snapshots

    def save(self, snapshot: PipelineSnapshot, reason: str = "") -> Checkpoint:
        """Durably write a new checkpoint."""
        with self._write_lock:
            self._sequence += 1
            now = utcnow()
            if self._last_timestamp and now < self._last_timestamp:
                now = self._last_timestamp
            checkpoint = Checkpoint(
                sequence=self._sequence,
                timestamp=now,
                reason=reason,
                payload=snapshot,
            )
            atomic_write_text(
                self.directory / checkpoint.filename,
                checkpoint.model_dump_json(indent=2),
            )
            self._last_timestamp = now
        logger.debug(f"CHECKPOINT: #{checkpoint.sequence} {reason}")
        return checkpoint

    def latest(self) -> Checkpoint | None:
        """Newest readable checkpoint, or None if there is none."""
        for path in reversed(self._files()):
            checkpoint = self._read(path)
            if checkpoint is not None:
                return checkpoint
        return None

    def get(self, checkpoint_id: str) -> Checkpoint | None:
        for path in self._files():
            if path.stem.endswith(checkpoint_id):
                return self._read(path)
        return None

    def list_checkpoints(self) -> list[Checkpoint]:
        """All readable checkpoints, oldest first."""
        return [c for c in (self._read(p) for p in self._files()) if c is not None]

    def prune(self, retention: int | None = None) -> int:
        """Delete superseded checkpoints beyond the retention count.

        Returns:
            Number of files removed
        """
        keep = max(1, self.retention if retention is None else retention)
        with self._write_lock:
            files = self._files()
            stale = files[:-keep] if len(files) > keep else []
            for path in stale:
                path.unlink(missing_ok=True)
        if stale:
            logger.info(f"CHECKPOINT: pruned {len(stale)} superseded checkpoints")
        return len(stale)
