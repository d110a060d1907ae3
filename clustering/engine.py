"""Cluster engine.

Greedy single pass: each incoming item is compared with the
representative embedding of every pending cluster, in creation order,
and joins the first one whose cosine similarity is strictly above the
threshold. Otherwise it founds a new cluster and becomes its
representative.
"""

import logging
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from integrations.base import EmbeddingDatabase, FeedbackAnalyzer
from memory.store import cosine_similarity
from schemas.feedback import (
    Classification,
    ClusterStatus,
    FeedbackCluster,
    FeedbackItem,
)
from tools.errors import FordError, describe_error
from tools.gateway import ResilientToolGateway

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.8

EMBED_TOOL = "embed"
DATABASE_TOOL = "database"


@dataclass
class DeadLetter:
    """An item that could not be embedded. Parked, never dropped."""

    item: FeedbackItem
    classification: Classification
    error: dict


class ClusterEngine:
    """Deduplicates and groups classified feedback."""

    def __init__(
        self,
        gateway: ResilientToolGateway | None = None,
        analyzer: FeedbackAnalyzer | None = None,
        database: EmbeddingDatabase | None = None,
        threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    ) -> None:
        """Initialize cluster engine.

        Args:
            gateway: Gateway wrapping embedding and database calls
            analyzer: Embedding capability for items without an embedding
            database: Optional embedding database to record vectors in
            threshold: Similarity a match must exceed
        """
        self.gateway = gateway
        self.analyzer = analyzer
        self.database = database
        self.threshold = threshold
        self.clusters: dict[str, FeedbackCluster] = {}
        self.dead_letters: dict[str, DeadLetter] = {}
        self._membership: dict[str, str] = {}
        self._lock = threading.RLock()

    def _call(self, tool: str, func, *args):
        if self.gateway is None:
            return func(*args)
        return self.gateway.invoke(tool, func, *args)

    def _embedding_for(self, item: FeedbackItem, classification: Classification) -> list[float]:
        if classification.embedding:
            return list(classification.embedding)
        if self.analyzer is None:
            raise FordError(f"No embedding for {item.id} and no analyzer configured")
        return list(self._call(EMBED_TOOL, self.analyzer.embed, item.text))

    def _store_vector(self, item: FeedbackItem, classification: Classification, vector: list[float]) -> None:
        if self.database is None:
            return
        metadata = {
            "category": classification.category.value,
            "severity": classification.severity,
            "author": item.author,
        }
        try:
            self._call(DATABASE_TOOL, self.database.store_embedding, item.id, vector, metadata)
        except FordError as e:
            # Clustering does not depend on the database; the vector is re-stored on re-ingest
            logger.warning(f"CLUSTER: could not store embedding for {item.id}: {e}")

    def _match(self, vector: list[float]) -> FeedbackCluster | None:
        for cluster in self.clusters.values():
            if cluster.status != ClusterStatus.PENDING or not cluster.representative_embedding:
                continue
            try:
                score = cosine_similarity(vector, cluster.representative_embedding)
            except ValueError:
                continue
            if score > self.threshold:
                return cluster
        return None

    def assign(self, item: FeedbackItem, classification: Classification) -> FeedbackCluster | None:
        """Place one item; returns its cluster or None if dead-lettered."""
        with self._lock:
            if item.id in self._membership:
                return self.clusters.get(self._membership[item.id])

        try:
            vector = self._embedding_for(item, classification)
        except FordError as e:
            logger.warning(f"CLUSTER: parking {item.id} in dead letters: {e}")
            with self._lock:
                self.dead_letters[item.id] = DeadLetter(item, classification, describe_error(e))
            return None

        self._store_vector(item, classification, vector)

        with self._lock:
            self.dead_letters.pop(item.id, None)
            if item.id in self._membership:
                return self.clusters.get(self._membership[item.id])
            cluster = self._match(vector)
            if cluster is None:
                cluster = FeedbackCluster(
                    category=classification.category,
                    representative_id=item.id,
                    representative_embedding=vector,
                    common_theme=classification.extracted.title or item.text[:80],
                )
                self.clusters[cluster.id] = cluster
                logger.debug(f"CLUSTER: new cluster {cluster.id[:8]} founded by {item.id}")
            cluster.add_member(item.id, classification.severity, classification.category)
            self._membership[item.id] = cluster.id
            return cluster

    def cluster(
        self,
        items: Iterable[FeedbackItem],
        classifications: Mapping[str, Classification],
    ) -> list[FeedbackCluster]:
        """Cluster a batch of classified items.

        Returns:
            Clusters that gained members in this call, in first-touch order
        """
        touched: dict[str, FeedbackCluster] = {}
        for item in items:
            classification = classifications.get(item.id)
            if classification is None:
                logger.warning(f"CLUSTER: {item.id} has no classification, skipping")
                continue
            cluster = self.assign(item, classification)
            if cluster is not None:
                touched.setdefault(cluster.id, cluster)
        return list(touched.values())

    def retry_dead_letters(self) -> list[FeedbackCluster]:
        """Re-attempt every parked item."""
        with self._lock:
            parked = list(self.dead_letters.values())
        return self.cluster(
            [p.item for p in parked],
            {p.item.id: p.classification for p in parked},
        )

    def get(self, cluster_id: str) -> FeedbackCluster | None:
        with self._lock:
            return self.clusters.get(cluster_id)

    def pending(self) -> list[FeedbackCluster]:
        with self._lock:
            return [c for c in self.clusters.values() if c.status == ClusterStatus.PENDING]

    def restore(self, clusters: Iterable[FeedbackCluster]) -> None:
        """Reload clusters from a checkpoint."""
        with self._lock:
            for cluster in clusters:
                self.clusters[cluster.id] = cluster
                for member in cluster.member_ids:
                    self._membership[member] = cluster.id
