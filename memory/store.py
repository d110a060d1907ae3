"""Embedding store for feedback similarity search.

Reference implementation of the ``EmbeddingDatabase`` capability.
Uses NumPy for embeddings and JSON for metadata:

    <store_path>/
    ├── embeddings.npy   # Vector embeddings (NumPy, float32)
    └── index.json       # Ids, metadata, store version
"""

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

import numpy as np

from integrations.base import EmbeddingDatabase, SimilarityHit

logger = logging.getLogger(__name__)


def cosine_similarity(a: list[float] | np.ndarray, b: list[float] | np.ndarray) -> float:
    """Cosine similarity of two vectors (0.0 if either is all zeros)."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Dimension mismatch: {va.shape} vs {vb.shape}")
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0:
        return 0.0
    return float(np.dot(va, vb) / denom)


class EmbeddingStore(EmbeddingDatabase):
    """In-process vector store with optional persistence."""

    VERSION = 1

    def __init__(self, store_path: Path | None = None):
        """Initialize embedding store.

        Args:
            store_path: Directory to persist to (None keeps it in memory)
        """
        self.store_path = store_path
        self.embeddings: np.ndarray | None = None
        self.ids: list[str] = []
        self.metadata: list[dict[str, Any]] = []
        self._lock = threading.Lock()

        if self.store_path and (self.store_path / "index.json").exists():
            self.load()

    def __len__(self) -> int:
        return len(self.ids)

    def store_embedding(
        self,
        item_id: str,
        vector: list[float],
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Insert or replace the embedding for an id."""
        row = np.asarray(vector, dtype=np.float32).reshape(1, -1)
        with self._lock:
            if self.embeddings is not None and row.shape[1] != self.embeddings.shape[1]:
                raise ValueError(
                    f"Dimension mismatch: store has {self.embeddings.shape[1]}, got {row.shape[1]}"
                )
            if item_id in self.ids:
                idx = self.ids.index(item_id)
                self.embeddings[idx] = row[0]
                self.metadata[idx] = dict(metadata or {})
            elif self.embeddings is None:
                self.embeddings = row
                self.ids.append(item_id)
                self.metadata.append(dict(metadata or {}))
            else:
                self.embeddings = np.vstack([self.embeddings, row])
                self.ids.append(item_id)
                self.metadata.append(dict(metadata or {}))

    def search_similar(
        self,
        vector: list[float],
        limit: int = 10,
        threshold: float = 0.0,
    ) -> list[SimilarityHit]:
        """Cosine search, highest score first."""
        with self._lock:
            if self.embeddings is None or not self.ids:
                return []
            query = np.asarray(vector, dtype=np.float32)
            query_norm = query / (np.linalg.norm(query) + 1e-9)
            norms = self.embeddings / (
                np.linalg.norm(self.embeddings, axis=1, keepdims=True) + 1e-9
            )
            scores = norms @ query_norm
            order = np.argsort(-scores, kind="stable")
            hits = []
            for idx in order:
                score = float(scores[idx])
                if score < threshold:
                    break
                hits.append(SimilarityHit(self.ids[idx], score, dict(self.metadata[idx])))
                if len(hits) >= limit:
                    break
            return hits

    def save(self) -> None:
        """Persist the store to disk."""
        if self.store_path is None:
            return
        self.store_path.mkdir(parents=True, exist_ok=True)
        with self._lock:
            if self.embeddings is not None:
                np.save(self.store_path / "embeddings.npy", self.embeddings)
            index = {
                "version": self.VERSION,
                "ids": self.ids,
                "metadata": self.metadata,
                "saved_at": datetime.now().isoformat(),
            }
        with open(self.store_path / "index.json", "w", encoding="utf-8") as f:
            json.dump(index, f, indent=2, default=str)
        logger.debug(f"Saved {len(self.ids)} embeddings to {self.store_path}")

    def load(self) -> None:
        """Load the store from disk."""
        with open(self.store_path / "index.json", encoding="utf-8") as f:
            index = json.load(f)
        embeddings_path = self.store_path / "embeddings.npy"
        with self._lock:
            self.ids = list(index.get("ids", []))
            self.metadata = list(index.get("metadata", [{} for _ in self.ids]))
            self.embeddings = np.load(embeddings_path) if embeddings_path.exists() else None
        logger.debug(f"Loaded {len(self.ids)} embeddings from {self.store_path}")
