"""
Scoring Engine - turns raw similarity into a ranked result list.

Pipeline per candidate:
1. Filters (content type, tags, decay tier, path prefix, creation range, entities)
2. Archived nodes dropped unless include_archived
3. Similarity from the index distance (approximate) or computed directly (exact)
4. Temporal decay: score *= exp(-time_decay * days_since_last_access)
5. Quality boost: score *= 0.5 + 0.5 * quality.score
6. Threshold at min_score, stable sort by score descending, truncate to top_k

The approximate path over-fetches max(top_k * 3, 100) neighbours so filtering
still leaves enough candidates. Equal scores keep retrieval order.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Collection, Iterator, List, Optional, Tuple, Union

import numpy as np

from . import vectors
from .config import settings
from .errors import DimensionError, StructuralError
from .models import ContentType, DecayTier, MemoryNode, now_ms
from .temporal import days_since

if TYPE_CHECKING:
    from .store import MemoryStore

logger = logging.getLogger(__name__)

Candidate = Tuple[MemoryNode, float, float]  # node, similarity, distance


@dataclass
class SearchFilters:
    """
    Candidate filters. A filter left as None (or empty) is inactive; a node
    must match every active filter.

    Attributes:
        types: Content types to keep
        tags: Keep nodes carrying any of these tags
        decay_tiers: Decay tiers to keep
        paths: Keep nodes whose path starts with any of these prefixes
        date_range: Inclusive (start, end) epoch-ms range on creation time
        entities: Keep nodes mentioned by any of these entity ids
    """
    types: Optional[Collection[Union[ContentType, str]]] = None
    tags: Optional[Collection[str]] = None
    decay_tiers: Optional[Collection[Union[DecayTier, str]]] = None
    paths: Optional[Collection[str]] = None
    date_range: Optional[Tuple[int, int]] = None
    entities: Optional[Collection[str]] = None

    def __post_init__(self):
        if self.types:
            self.types = {ContentType(t) for t in self.types}
        if self.decay_tiers:
            self.decay_tiers = {DecayTier(t) for t in self.decay_tiers}

    def matches(self, node: MemoryNode, store: Optional["MemoryStore"] = None) -> bool:
        if self.types and node.content.type not in self.types:
            return False
        if self.tags and not any(t in node.metadata.tags for t in self.tags):
            return False
        if self.decay_tiers and node.temporal.decay_tier not in self.decay_tiers:
            return False
        if self.paths and not any(node.path.startswith(p) for p in self.paths):
            return False
        if self.date_range:
            start, end = self.date_range
            if node.temporal.created < start or node.temporal.created > end:
                return False
        if self.entities:
            if store is None:
                return False
            mentioned = {e.id for e in store.entities_for(node.id)}
            if not mentioned.intersection(self.entities):
                return False
        return True


@dataclass
class SearchOptions:
    top_k: int = field(default_factory=lambda: settings.search_top_k)
    min_score: float = field(default_factory=lambda: settings.search_min_score)
    filters: Optional[SearchFilters] = None
    time_decay: float = 0.0  # 0 disables decay
    include_archived: bool = False

    def __post_init__(self):
        if isinstance(self.filters, dict):
            self.filters = SearchFilters(**self.filters)


@dataclass
class SearchResult:
    node: MemoryNode
    score: float
    distance: Optional[float] = None


class ScoringEngine:
    """
    Ranks candidates from either index strategy.

    The strategy is picked from the store: an approximate index is queried
    when present, otherwise every embedded node is scanned.
    """

    def __init__(self, now: Union[None, int, Callable[[], int]] = None):
        """
        Args:
            now: Reference time for decay, as epoch ms or a clock callable
        """
        if now is None:
            self._clock = now_ms
        elif callable(now):
            self._clock = now
        else:
            self._clock = lambda: now

    def search(
        self,
        store: "MemoryStore",
        query: vectors.VectorLike,
        options: Optional[SearchOptions] = None
    ) -> List[SearchResult]:
        if store.has_approximate_index:
            return self.search_approximate(store, query, options)
        return self.search_exact(store, query, options)

    def search_approximate(
        self,
        store: "MemoryStore",
        query: vectors.VectorLike,
        options: Optional[SearchOptions] = None
    ) -> List[SearchResult]:
        options = options or SearchOptions()
        return self._rank(store, self._approximate_candidates(store, query, options), options)

    def search_exact(
        self,
        store: "MemoryStore",
        query: vectors.VectorLike,
        options: Optional[SearchOptions] = None
    ) -> List[SearchResult]:
        options = options or SearchOptions()
        return self._rank(store, self._exact_candidates(store, query), options)

    # ------------------------------------------------------------------

    def _approximate_candidates(
        self,
        store: "MemoryStore",
        query: vectors.VectorLike,
        options: SearchOptions
    ) -> Iterator[Candidate]:
        space = store.index.space
        fetch = max(options.top_k * 3, 100)
        for node_id, dist in store.index.search(query, fetch):
            node = store.get(node_id)
            if node is None or not node.has_embedding:
                continue
            yield node, vectors.distance_to_similarity(space, dist), dist

    def _exact_candidates(self, store: "MemoryStore", query: vectors.VectorLike) -> Iterator[Candidate]:
        nodes = [n for n in store.all() if n.has_embedding]
        if not nodes:
            return
        q = vectors.as_vector(query)
        for node in nodes:
            if node.embedding.shape != q.shape:
                raise DimensionError(
                    f"Query has {q.shape[0]} dimensions, node {node.id} has {node.embedding.shape[0]}"
                )

        space = store.index.space
        matrix = np.vstack([vectors.normalize(n.embedding) for n in nodes])
        dists = vectors.distances(space, matrix, vectors.normalize(q))
        for node, dist in zip(nodes, dists):
            yield node, vectors.distance_to_similarity(space, float(dist)), float(dist)

    def _rank(
        self,
        store: "MemoryStore",
        candidates: Iterator[Candidate],
        options: SearchOptions
    ) -> List[SearchResult]:
        now = self._clock()
        filters = options.filters
        results: List[SearchResult] = []

        for node, score, dist in candidates:
            if filters is not None and not filters.matches(node, store):
                continue
            if not options.include_archived and node.temporal.decay_tier == DecayTier.ARCHIVE:
                continue

            if options.time_decay > 0:
                score *= math.exp(-options.time_decay * days_since(node.temporal.accessed, now))

            score *= 0.5 + 0.5 * node.quality.score

            if score >= options.min_score:
                results.append(SearchResult(node=node, score=score, distance=dist))

        # list.sort is stable, ties keep retrieval order
        results.sort(key=lambda r: r.score, reverse=True)
        return results[:options.top_k]


def search_nodes(
    store: "MemoryStore",
    query: vectors.VectorLike,
    options: Optional[SearchOptions] = None
) -> List[SearchResult]:
    """Search with whichever strategy the store is configured for."""
    return ScoringEngine(now=store.clock).search(store, query, options)


def search_approximate(
    store: "MemoryStore",
    query: vectors.VectorLike,
    options: Optional[SearchOptions] = None
) -> List[SearchResult]:
    """Search through the store's approximate index."""
    if not store.has_approximate_index:
        raise StructuralError("Store has no approximate index; call build_index(config) first")
    return ScoringEngine(now=store.clock).search_approximate(store, query, options)


def search_exact(
    store: "MemoryStore",
    query: vectors.VectorLike,
    options: Optional[SearchOptions] = None
) -> List[SearchResult]:
    """Linear scan over every embedded node, regardless of the index in use."""
    return ScoringEngine(now=store.clock).search_exact(store, query, options)
