"""
Similarity Index - exact and approximate nearest-neighbor search over node embeddings.

This module provides:
- SimilarityIndex: the capability both variants offer (insert, tombstone delete, k-NN)
- ExactIndex: numpy linear scan, no capacity limit
- ApproximateIndex: HNSW graph index backed by hnswlib
- create_index(): picks the variant from the presence of an IndexConfig

Both variants keep a bidirectional label<->id map. Labels increase
monotonically and are never reused within a session, not even after a
rebuild. Vectors are normalized to unit length on the way in and on query.

hnswlib only tombstones deleted elements: the engine's element count (and its
memory) only grows until rebuild() compacts it, and recall degrades as
tombstones accumulate. Call MemoryStore.rebuild_index() after heavy churn.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Protocol, Tuple

import hnswlib
import numpy as np

from . import vectors
from .config import settings
from .errors import CapacityError, NotFoundError, StructuralError

logger = logging.getLogger(__name__)


@dataclass
class IndexConfig:
    """
    Approximate index parameters.

    Attributes:
        dimensions: Embedding length
        space: Distance metric, one of cosine, l2, ip
        max_elements: Engine capacity (tombstones included)
        m: Max bidirectional links per node
        ef_construction: Candidate list size during construction
        ef_search: Candidate list size during queries (raised to k when smaller)
        random_seed: Seed for the graph's level generator
    """
    dimensions: int
    space: str = field(default_factory=lambda: settings.hnsw_space)
    max_elements: int = field(default_factory=lambda: settings.hnsw_max_elements)
    m: int = field(default_factory=lambda: settings.hnsw_m)
    ef_construction: int = field(default_factory=lambda: settings.hnsw_ef_construction)
    ef_search: int = field(default_factory=lambda: settings.hnsw_ef_search)
    random_seed: int = field(default_factory=lambda: settings.hnsw_random_seed)

    def __post_init__(self):
        if self.space not in vectors.SPACES:
            raise ValueError(f"Unknown space {self.space!r}; expected one of {vectors.SPACES}")
        if self.dimensions <= 0:
            raise ValueError("dimensions must be positive")


class LabelMap:
    """Bidirectional label <-> node id mapping with a monotonic label counter."""

    def __init__(self):
        self._by_label: Dict[int, str] = {}
        self._by_id: Dict[str, int] = {}
        self._next_label = 0

    def assign(self, node_id: str) -> int:
        label = self._next_label
        self._next_label += 1
        self._by_label[label] = node_id
        self._by_id[node_id] = label
        return label

    def release(self, label: int) -> str:
        """Drop both directions for ``label`` and return its node id."""
        node_id = self._by_label.pop(label, None)
        if node_id is None:
            raise NotFoundError("label", str(label))
        del self._by_id[node_id]
        return node_id

    def label_for(self, node_id: str) -> Optional[int]:
        return self._by_id.get(node_id)

    def id_for(self, label: int) -> Optional[str]:
        return self._by_label.get(label)

    def clear(self) -> None:
        """Forget every mapping. The counter keeps going."""
        self._by_label.clear()
        self._by_id.clear()

    @property
    def next_label(self) -> int:
        return self._next_label

    def labels(self) -> Iterator[int]:
        return iter(self._by_label)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._by_id

    def __len__(self) -> int:
        return len(self._by_label)


class SimilarityIndex(Protocol):
    """What the store and the scoring engine need from an index."""

    exact: bool
    space: str

    def insert(self, node_id: str, vector: vectors.VectorLike) -> int: ...

    def delete(self, label: int) -> None: ...

    def remove(self, node_id: str) -> bool: ...

    def search(self, query: vectors.VectorLike, k: int) -> List[Tuple[str, float]]: ...

    def size(self) -> int: ...

    def has_capacity(self, count: int = 1) -> bool: ...

    def label_for(self, node_id: str) -> Optional[int]: ...

    def rebuild(self, items: Iterable[Tuple[str, vectors.VectorLike]], capacity: Optional[int] = None) -> None: ...

    def stats(self) -> Dict[str, Any]: ...

    def __contains__(self, node_id: object) -> bool: ...


class ExactIndex:
    """
    Linear-scan index.

    Computes the configured metric against every stored vector per query.
    Used when no approximate configuration is supplied, or when exact
    results are required.
    """

    exact = True

    def __init__(self, space: str = "cosine", dimensions: Optional[int] = None):
        if space not in vectors.SPACES:
            raise ValueError(f"Unknown space {space!r}; expected one of {vectors.SPACES}")
        self.space = space
        self.dimensions = dimensions
        self.labels = LabelMap()
        self._vectors: Dict[int, np.ndarray] = {}
        self._matrix: Optional[np.ndarray] = None
        self._matrix_labels: List[int] = []

    def _prepare(self, vector: vectors.VectorLike) -> np.ndarray:
        vec = vectors.as_vector(vector)
        vectors.check_dimensions(vec, self.dimensions)
        return vectors.normalize(vec)

    def insert(self, node_id: str, vector: vectors.VectorLike) -> int:
        if node_id in self.labels:
            raise StructuralError(f"Node {node_id!r} is already indexed")
        vec = self._prepare(vector)
        if self.dimensions is None:
            self.dimensions = vec.shape[0]
        label = self.labels.assign(node_id)
        self._vectors[label] = vec
        self._matrix = None
        return label

    def delete(self, label: int) -> None:
        self.labels.release(label)
        del self._vectors[label]
        self._matrix = None

    def remove(self, node_id: str) -> bool:
        label = self.labels.label_for(node_id)
        if label is None:
            return False
        self.delete(label)
        return True

    def search(self, query: vectors.VectorLike, k: int) -> List[Tuple[str, float]]:
        """Return up to ``k`` (node_id, distance) pairs, nearest first."""
        if not self._vectors or k <= 0:
            return []
        q = self._prepare(query)

        if self._matrix is None:
            self._matrix_labels = list(self._vectors)
            self._matrix = np.vstack([self._vectors[label] for label in self._matrix_labels])

        dists = vectors.distances(self.space, self._matrix, q)
        order = np.argsort(dists, kind="stable")[:k]
        return [
            (self.labels.id_for(self._matrix_labels[i]), float(dists[i]))
            for i in order
        ]

    def size(self) -> int:
        return len(self.labels)

    def has_capacity(self, count: int = 1) -> bool:
        return True

    def label_for(self, node_id: str) -> Optional[int]:
        return self.labels.label_for(node_id)

    def rebuild(self, items: Iterable[Tuple[str, vectors.VectorLike]], capacity: Optional[int] = None) -> None:
        """Reindex ``items`` from scratch with fresh labels."""
        self.labels.clear()
        self._vectors.clear()
        self._matrix = None
        for node_id, vector in items:
            self.insert(node_id, vector)

    def stats(self) -> Dict[str, Any]:
        return {
            "variant": "exact",
            "space": self.space,
            "dimensions": self.dimensions,
            "live": self.size(),
            "current_count": self.size(),
            "max_elements": None,
            "tombstones": 0,
        }

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.labels

    def __len__(self) -> int:
        return self.size()


class ApproximateIndex:
    """
    HNSW index backed by hnswlib.

    Initialized once with a fixed capacity. Deletion marks elements as
    deleted without reclaiming their slot, so capacity is consumed by every
    insert until rebuild() starts a fresh engine from the live vectors.
    """

    exact = False

    def __init__(self, config: IndexConfig):
        self.config = config
        self.space = config.space
        self.dimensions = config.dimensions
        self.labels = LabelMap()
        self._engine = self._new_engine(config.max_elements)
        logger.info(
            f"Initialized HNSW index (space={config.space}, dims={config.dimensions}, "
            f"capacity={config.max_elements}, M={config.m}, ef_construction={config.ef_construction})"
        )

    def _new_engine(self, capacity: int) -> "hnswlib.Index":
        engine = hnswlib.Index(space=self.config.space, dim=self.config.dimensions)
        engine.init_index(
            max_elements=capacity,
            ef_construction=self.config.ef_construction,
            M=self.config.m,
            random_seed=self.config.random_seed,
        )
        engine.set_ef(self.config.ef_search)
        return engine

    def _prepare(self, vector: vectors.VectorLike) -> np.ndarray:
        vec = vectors.as_vector(vector)
        vectors.check_dimensions(vec, self.dimensions)
        return vectors.normalize(vec)

    @property
    def capacity(self) -> int:
        return self._engine.get_max_elements()

    def has_capacity(self, count: int = 1) -> bool:
        return self._engine.get_current_count() + count <= self.capacity

    def insert(self, node_id: str, vector: vectors.VectorLike) -> int:
        if node_id in self.labels:
            raise StructuralError(f"Node {node_id!r} is already indexed")
        vec = self._prepare(vector)
        if not self.has_capacity():
            raise CapacityError(
                f"HNSW index is full ({self._engine.get_current_count()}/{self.capacity} "
                f"elements incl. {self.tombstones} deleted); rebuild or raise max_elements"
            )
        label = self.labels.next_label
        self._engine.add_items(vec.reshape(1, -1), [label], num_threads=1)
        self.labels.assign(node_id)
        return label

    def delete(self, label: int) -> None:
        self.labels.release(label)
        self._engine.mark_deleted(label)

    def remove(self, node_id: str) -> bool:
        label = self.labels.label_for(node_id)
        if label is None:
            return False
        self.delete(label)
        return True

    def search(self, query: vectors.VectorLike, k: int) -> List[Tuple[str, float]]:
        """Return up to ``k`` (node_id, distance) pairs, nearest first."""
        k = min(k, self.size())
        if k <= 0:
            return []
        q = self._prepare(query)

        self._engine.set_ef(max(self.config.ef_search, k))
        found, dists = self._engine.knn_query(q.reshape(1, -1), k=k, num_threads=1)

        results = []
        for label, dist in zip(found[0], dists[0]):
            node_id = self.labels.id_for(int(label))
            if node_id is not None:
                results.append((node_id, float(dist)))
        return results

    def size(self) -> int:
        return len(self.labels)

    @property
    def tombstones(self) -> int:
        return self._engine.get_current_count() - self.size()

    def label_for(self, node_id: str) -> Optional[int]:
        return self.labels.label_for(node_id)

    def rebuild(self, items: Iterable[Tuple[str, vectors.VectorLike]], capacity: Optional[int] = None) -> None:
        """
        Compact into a fresh engine holding only ``items``.

        New labels continue from the current counter.
        """
        items = list(items)
        capacity = max(capacity or self.config.max_elements, len(items), 1)
        before = self._engine.get_current_count()

        self._engine = self._new_engine(capacity)
        self.labels.clear()
        for node_id, vector in items:
            self.insert(node_id, vector)

        logger.info(f"Rebuilt HNSW index: {before} -> {len(items)} elements (capacity {capacity})")

    def stats(self) -> Dict[str, Any]:
        return {
            "variant": "approximate",
            "space": self.space,
            "dimensions": self.dimensions,
            "live": self.size(),
            "current_count": self._engine.get_current_count(),
            "max_elements": self.capacity,
            "tombstones": self.tombstones,
        }

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.labels

    def __len__(self) -> int:
        return self.size()


def create_index(config: Optional[IndexConfig] = None, space: str = "cosine") -> SimilarityIndex:
    """ApproximateIndex when a config is given, ExactIndex otherwise."""
    if config is not None:
        return ApproximateIndex(config)
    return ExactIndex(space=space)
