from __future__ import annotations

import threading

from orchestrator.limiter import ConcurrencyLimiter
from orchestrator.work_queue import PriorityWorkQueue
from schemas.feedback import Category, FeedbackCluster


def _cluster(severity: float) -> FeedbackCluster:
    cluster = FeedbackCluster(category=Category.BUG, representative_id=f"r{severity}")
    cluster.add_member(f"m{severity}", severity, Category.BUG)
    return cluster


def test_dequeue_highest_severity_first_fifo_on_ties() -> None:
    queue = PriorityWorkQueue()
    low, high, tie_first, tie_second = _cluster(10), _cluster(90), _cluster(50), _cluster(50)
    for cluster in (low, tie_first, high, tie_second):
        queue.enqueue(cluster)

    order = [queue.dequeue().id for _ in range(4)]

    assert order == [high.id, tie_first.id, tie_second.id, low.id]
    assert queue.dequeue() is None


def test_empty_queue_does_not_block() -> None:
    assert PriorityWorkQueue().dequeue() is None


def test_dispatched_cluster_only_returns_through_requeue() -> None:
    queue = PriorityWorkQueue()
    cluster = _cluster(70)
    queue.enqueue(cluster)
    assert not queue.enqueue(cluster)

    queue.dequeue()
    assert queue.is_dispatched(cluster.id)
    assert not queue.enqueue(cluster)

    assert queue.requeue(cluster)
    assert queue.dequeue() is cluster


def test_removed_entries_are_skipped() -> None:
    queue = PriorityWorkQueue()
    a, b = _cluster(80), _cluster(20)
    queue.enqueue(a)
    queue.enqueue(b)

    assert queue.remove(a.id)
    assert a.id not in queue
    assert queue.dequeue() is b


def test_snapshot_restore_preserves_order() -> None:
    queue = PriorityWorkQueue()
    clusters = [_cluster(s) for s in (40, 60, 40)]
    for cluster in clusters:
        queue.enqueue(cluster)
    queue.dequeue()
    entries, dispatched = queue.snapshot()

    restored = PriorityWorkQueue()
    restored.restore(entries, {c.id: c for c in clusters}, dispatched)

    assert restored.is_dispatched(clusters[1].id)
    assert [restored.dequeue().id for _ in range(2)] == [clusters[0].id, clusters[2].id]
    late = _cluster(40)
    restored.enqueue(late)
    assert restored.peek().sequence > max(e.sequence for e in entries)


def test_concurrent_dequeue_hands_out_each_cluster_once() -> None:
    queue = PriorityWorkQueue()
    clusters = [_cluster(i % 100) for i in range(200)]
    for cluster in clusters:
        queue.enqueue(cluster)
    taken: list[str] = []
    lock = threading.Lock()

    def worker() -> None:
        while True:
            cluster = queue.dequeue()
            if cluster is None:
                return
            with lock:
                taken.append(cluster.id)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(taken) == sorted(c.id for c in clusters)


def test_limiter_bounds_active_slots() -> None:
    limiter = ConcurrencyLimiter(2)

    assert limiter.try_acquire("a")
    assert limiter.try_acquire("a")
    assert limiter.try_acquire("b")
    assert not limiter.try_acquire("c")
    assert limiter.available == 0

    assert limiter.release("a")
    assert not limiter.release("a")
    assert limiter.try_acquire("c")
    assert limiter.holders() == ["b", "c"]
