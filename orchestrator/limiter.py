"""Concurrency limiter for active change requests."""

import logging
import threading

logger = logging.getLogger(__name__)


class ConcurrencyLimiter:
    """Bounds how many change requests hold an active slot.

    With ``count_pending_review`` False, a change request gives its slot
    back while it waits for a human review and must win a slot again
    before it can continue.
    """

    def __init__(self, limit: int, count_pending_review: bool = True) -> None:
        if limit < 1:
            raise ValueError(f"Concurrency limit must be at least 1, got {limit}")
        self.limit = limit
        self.count_pending_review = count_pending_review
        self._holders: set[str] = set()
        self._lock = threading.Lock()

    def try_acquire(self, cr_id: str) -> bool:
        """Take a slot without blocking. Re-acquiring a held slot is a no-op."""
        with self._lock:
            if cr_id in self._holders:
                return True
            if len(self._holders) >= self.limit:
                return False
            self._holders.add(cr_id)
            logger.debug(f"LIMITER: {cr_id[:8]} acquired ({len(self._holders)}/{self.limit})")
            return True

    def release(self, cr_id: str) -> bool:
        with self._lock:
            if cr_id not in self._holders:
                return False
            self._holders.remove(cr_id)
            logger.debug(f"LIMITER: {cr_id[:8]} released ({len(self._holders)}/{self.limit})")
            return True

    def holds(self, cr_id: str) -> bool:
        with self._lock:
            return cr_id in self._holders

    @property
    def active(self) -> int:
        with self._lock:
            return len(self._holders)

    @property
    def available(self) -> int:
        with self._lock:
            return self.limit - len(self._holders)

    def holders(self) -> list[str]:
        with self._lock:
            return sorted(self._holders)
