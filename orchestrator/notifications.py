"""Notification ledger.

Idempotent record of which feedback items have been told that their
issue was fixed. The check for an existing ``sent`` entry and the
recording of the new outcome happen under one lock per
(feedback id, PR number), so two concurrent ``notify`` calls for the
same merged PR produce a single ``sent`` entry.

Storage:
    <state_dir>/ledger.jsonl     # one entry per line, append-only
    <state_dir>/opt_outs.json    # authors who asked not to be contacted
"""

import json
import logging
import threading
from collections.abc import Iterable, Mapping
from pathlib import Path

from integrations.base import Notifier
from schemas.feedback import FeedbackCluster, FeedbackItem
from schemas.notification import (
    NotificationLedgerEntry,
    NotificationResult,
    NotificationStatus,
)
from tools.errors import FordError
from tools.gateway import ResilientToolGateway

from .checkpoints import atomic_write_text
from .locks import KeyedLocks

logger = logging.getLogger(__name__)

NOTIFIER_TOOL = "notifier"

DEFAULT_MESSAGE = "Thanks for the report! A fix has been merged in PR #{pr_number}."


class NotificationLedger:
    """Ledger plus the notify step that consults it."""

    def __init__(
        self,
        state_dir: Path | str | None = None,
        gateway: ResilientToolGateway | None = None,
        notifier: Notifier | None = None,
        message_template: str = DEFAULT_MESSAGE,
    ) -> None:
        self.state_dir = Path(state_dir) if state_dir else None
        self.gateway = gateway
        self.notifier = notifier
        self.message_template = message_template
        self._entries: list[NotificationLedgerEntry] = []
        self._sent: set[tuple[str, int]] = set()
        self._opt_outs: set[str] = set()
        self._delta: list[NotificationLedgerEntry] = []
        self._lock = threading.Lock()
        self._keys = KeyedLocks()
        if self.state_dir:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            self.load()

    @property
    def ledger_path(self) -> Path | None:
        return self.state_dir / "ledger.jsonl" if self.state_dir else None

    @property
    def opt_out_path(self) -> Path | None:
        return self.state_dir / "opt_outs.json" if self.state_dir else None

    def load(self) -> None:
        if self.ledger_path and self.ledger_path.exists():
            with open(self.ledger_path, encoding="utf-8") as f:
                for line in f:
                    if line.strip():
                        self._add(NotificationLedgerEntry.model_validate_json(line), persist=False)
        if self.opt_out_path and self.opt_out_path.exists():
            self._opt_outs = set(json.loads(self.opt_out_path.read_text(encoding="utf-8")))

    def _add(self, entry: NotificationLedgerEntry, persist: bool = True) -> None:
        with self._lock:
            self._entries.append(entry)
            if entry.status == NotificationStatus.SENT:
                self._sent.add(entry.key)
            if persist:
                self._delta.append(entry)
                if self.ledger_path:
                    with open(self.ledger_path, "a", encoding="utf-8") as f:
                        f.write(entry.model_dump_json() + "\n")

    # Queries

    def entries(self, feedback_id: str | None = None, pr_number: int | None = None) -> list[NotificationLedgerEntry]:
        with self._lock:
            return [
                e
                for e in self._entries
                if (feedback_id is None or e.feedback_id == feedback_id)
                and (pr_number is None or e.pr_number == pr_number)
            ]

    def was_sent(self, feedback_id: str, pr_number: int) -> bool:
        with self._lock:
            return (feedback_id, pr_number) in self._sent

    # Opt-outs

    def opt_out(self, author: str) -> None:
        with self._lock:
            self._opt_outs.add(author)
            if self.opt_out_path:
                atomic_write_text(self.opt_out_path, json.dumps(sorted(self._opt_outs), indent=2))

    @property
    def opt_outs(self) -> set[str]:
        with self._lock:
            return set(self._opt_outs)

    # Checkpoint support

    def drain_delta(self) -> list[NotificationLedgerEntry]:
        """Entries recorded since the previous call."""
        with self._lock:
            delta, self._delta = self._delta, []
            return delta

    def merge(self, entries: Iterable[NotificationLedgerEntry]) -> int:
        """Add checkpointed entries missing from the ledger file."""
        with self._lock:
            known = {e.id for e in self._entries}
        added = 0
        for entry in entries:
            if entry.id not in known:
                self._add(entry)
                added += 1
        return added

    # Notify step

    def notify(
        self,
        cluster: FeedbackCluster,
        pr_number: int,
        items: Mapping[str, FeedbackItem],
    ) -> NotificationResult:
        """Tell every member of a resolved cluster about the merged PR.

        Args:
            cluster: Resolved cluster
            pr_number: Merged pull request
            items: Feedback items by id

        Returns:
            Counts of sent, failed, skipped and already-notified members
        """
        result = NotificationResult(pr_number=pr_number)
        for feedback_id in cluster.member_ids:
            with self._keys.hold((feedback_id, pr_number)):
                if self.was_sent(feedback_id, pr_number):
                    result.already_notified += 1
                    continue
                entry = self._attempt(feedback_id, pr_number, items.get(feedback_id))
                self._add(entry)
            result.entries.append(entry)
            if entry.status == NotificationStatus.SENT:
                result.sent += 1
            elif entry.status == NotificationStatus.FAILED:
                result.failed += 1
            else:
                result.skipped += 1

        logger.info(
            f"NOTIFY: PR #{pr_number}: sent={result.sent} failed={result.failed} "
            f"skipped={result.skipped} already={result.already_notified}"
        )
        return result

    def _attempt(
        self,
        feedback_id: str,
        pr_number: int,
        item: FeedbackItem | None,
    ) -> NotificationLedgerEntry:
        def entry(status: NotificationStatus, detail: str = "") -> NotificationLedgerEntry:
            return NotificationLedgerEntry(
                feedback_id=feedback_id,
                pr_number=pr_number,
                status=status,
                detail=detail,
            )

        if item is None:
            return entry(NotificationStatus.SKIPPED, "feedback item unavailable")
        if item.author in self.opt_outs:
            return entry(NotificationStatus.SKIPPED, "author opted out")
        if self.notifier is None:
            return entry(NotificationStatus.SKIPPED, "no notifier configured")

        message = self.message_template.format(pr_number=pr_number, author=item.author)
        try:
            if self.gateway is not None:
                self.gateway.invoke(NOTIFIER_TOOL, self.notifier.send, item, pr_number, message)
            else:
                self.notifier.send(item, pr_number, message)
        except FordError as e:
            logger.warning(f"NOTIFY: failed for {feedback_id} on PR #{pr_number}: {e}")
            return entry(NotificationStatus.FAILED, str(e))
        return entry(NotificationStatus.SENT)
