"""Priority work queue of clusters awaiting action."""

import heapq
import itertools
import logging
import threading

from schemas.feedback import FeedbackCluster
from schemas.pipeline_state import QueueEntry

from .locks import KeyedLocks

logger = logging.getLogger(__name__)


class PriorityWorkQueue:
    """Severity-ordered queue with FIFO ties.

    ``dequeue`` never blocks; it returns None when the queue is empty.
    A dequeued cluster is marked dispatched and only comes back through
    ``requeue``.
    """

    def __init__(self) -> None:
        self._heap: list[tuple[float, int, str]] = []
        self._entries: dict[str, QueueEntry] = {}
        self._clusters: dict[str, FeedbackCluster] = {}
        self._dispatched: set[str] = set()
        self._counter = itertools.count()
        self._heap_lock = threading.Lock()
        self._keys = KeyedLocks()

    def __len__(self) -> int:
        with self._heap_lock:
            return len(self._entries)

    def __contains__(self, cluster_id: object) -> bool:
        with self._heap_lock:
            return cluster_id in self._entries

    def is_dispatched(self, cluster_id: str) -> bool:
        with self._heap_lock:
            return cluster_id in self._dispatched

    def enqueue(self, cluster: FeedbackCluster) -> bool:
        """Add a cluster.

        Returns:
            False if it is already queued or has been dispatched
        """
        with self._keys.hold(cluster.id):
            with self._heap_lock:
                if cluster.id in self._entries or cluster.id in self._dispatched:
                    return False
                self._push(cluster)
        logger.debug(f"QUEUE: enqueued {cluster.id[:8]} severity={cluster.average_severity:.1f}")
        return True

    def requeue(self, cluster: FeedbackCluster) -> bool:
        """Explicitly put a dispatched cluster back (e.g. after re-submission)."""
        with self._keys.hold(cluster.id):
            with self._heap_lock:
                if cluster.id in self._entries:
                    return False
                self._dispatched.discard(cluster.id)
                self._push(cluster)
        logger.info(f"QUEUE: re-queued {cluster.id[:8]}")
        return True

    def _push(self, cluster: FeedbackCluster, sequence: int | None = None) -> None:
        seq = next(self._counter) if sequence is None else sequence
        entry = QueueEntry(
            cluster_id=cluster.id,
            severity=cluster.average_severity,
            sequence=seq,
        )
        self._entries[cluster.id] = entry
        self._clusters[cluster.id] = cluster
        heapq.heappush(self._heap, (-entry.severity, entry.sequence, cluster.id))

    def dequeue(self) -> FeedbackCluster | None:
        """Highest-severity cluster, or None if the queue is empty."""
        with self._heap_lock:
            while self._heap:
                _, sequence, cluster_id = heapq.heappop(self._heap)
                entry = self._entries.get(cluster_id)
                # Skip stale heap rows left by remove()
                if entry is None or entry.sequence != sequence:
                    continue
                del self._entries[cluster_id]
                self._dispatched.add(cluster_id)
                return self._clusters.pop(cluster_id)
            return None

    def peek(self) -> QueueEntry | None:
        with self._heap_lock:
            ordered = sorted(self._entries.values(), key=lambda e: (-e.severity, e.sequence))
            return ordered[0] if ordered else None

    def remove(self, cluster_id: str) -> bool:
        with self._keys.hold(cluster_id):
            with self._heap_lock:
                if cluster_id not in self._entries:
                    return False
                del self._entries[cluster_id]
                self._clusters.pop(cluster_id, None)
                return True

    def release(self, cluster_id: str) -> None:
        """Forget that a cluster was dispatched (its work is finished)."""
        with self._heap_lock:
            self._dispatched.discard(cluster_id)

    def snapshot(self) -> tuple[list[QueueEntry], list[str]]:
        """Queue entries in dequeue order plus dispatched cluster ids."""
        with self._heap_lock:
            entries = sorted(self._entries.values(), key=lambda e: (-e.severity, e.sequence))
            return [e.model_copy() for e in entries], sorted(self._dispatched)

    def restore(
        self,
        entries: list[QueueEntry],
        clusters: dict[str, FeedbackCluster],
        dispatched: list[str] | None = None,
    ) -> None:
        """Rebuild from a checkpoint, keeping the original insertion order."""
        with self._heap_lock:
            self._heap.clear()
            self._entries.clear()
            self._clusters.clear()
            self._dispatched = set(dispatched or [])
            top = -1
            for entry in entries:
                cluster = clusters.get(entry.cluster_id)
                if cluster is None:
                    logger.warning(f"QUEUE: dropping entry for unknown cluster {entry.cluster_id}")
                    continue
                self._entries[entry.cluster_id] = entry
                self._clusters[entry.cluster_id] = cluster
                heapq.heappush(self._heap, (-entry.severity, entry.sequence, entry.cluster_id))
                top = max(top, entry.sequence)
            self._counter = itertools.count(top + 1)
