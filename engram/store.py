"""
Memory Store - owns every node record and keeps the tree, index and delta log in step.

The store is a single arena: one id-keyed mapping owns all nodes and every
cross-reference (parent, children, index label) is an id, never a live
object. Each mutation:
1. validates against the tree invariants without touching state
2. updates the similarity index (so a full index fails before anything changes)
3. commits to the arena
4. appends a delta to the log

Tree invariants:
- parent_id is None  <=>  the node is a root
- depth == parent.depth + 1 (0 for roots)
- path == parent.path + "/" + id ("/" + id for roots)
- a node id is in its parent's child list iff it exists with that parent
- no cycles (moves under a node's own subtree are rejected)

Mutations touching both the arena and the index run under a re-entrant lock;
reads are lock-free and must not overlap a mutation.
"""

import dataclasses
import logging
import threading
from collections import deque
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union

import numpy as np

from . import vectors
from .deltas import DeltaLog
from .errors import CapacityError, NotFoundError, StructuralError
from .ids import IdGenerator
from .index import IndexConfig, SimilarityIndex, create_index
from .models import (
    NODE_RECORDS,
    STRUCTURAL_FIELDS,
    ContentType,
    Delta,
    DeltaOperation,
    Entity,
    MemoryLink,
    MemoryNode,
    NodeContent,
    create_node,
    now_ms,
    to_plain,
)
from .scoring import ScoringEngine, SearchOptions, SearchResult
from .temporal import DecayConfig, get_decay_tier, is_expired

logger = logging.getLogger(__name__)

_NODE_FIELDS = frozenset(f.name for f in dataclasses.fields(MemoryNode))


class MemoryStore:
    """
    Hierarchical collection of memory nodes with similarity search.

    Usage:
        store = MemoryStore(index_config=IndexConfig(dimensions=384))
        root = store.add(create_node("Project notes", embedding=vec))
        child = store.add_child(root, "Decided on PostgreSQL", embedding=vec2)
        results = store.search(query_vec, top_k=5)
    """

    def __init__(
        self,
        nodes: Optional[Iterable[MemoryNode]] = None,
        index_config: Optional[IndexConfig] = None,
        *,
        space: str = "cosine",
        entities: Optional[Iterable[Entity]] = None,
        links: Optional[Iterable[MemoryLink]] = None,
        ids: Optional[IdGenerator] = None,
        clock=None,
        deltas: Optional[DeltaLog] = None,
    ):
        """
        Args:
            nodes: Initial nodes, bulk-loaded with load()
            index_config: Use an approximate (HNSW) index with these parameters;
                          an exact linear-scan index is used when omitted
            space: Metric for the exact index (ignored with index_config)
            entities: Initial entities
            links: Initial links
            ids: Id generator for nodes created by the store
            clock: Callable returning epoch milliseconds
            deltas: Delta log to record into (a fresh one by default)
        """
        self.clock = clock or now_ms
        self.ids = ids or IdGenerator(clock=self.clock)
        self.deltas = deltas if deltas is not None else DeltaLog(clock=self.clock)
        self.index: SimilarityIndex = create_index(index_config, space=space)

        self._nodes: Dict[str, MemoryNode] = {}
        self._roots: Dict[str, None] = {}  # insertion-ordered set
        self._entities: Dict[str, Entity] = {}
        self._links: Dict[str, MemoryLink] = {}
        self._lock = threading.RLock()

        if nodes:
            self.load(nodes)
        for entity in entities or []:
            self._entities[entity.id] = entity
        for link in links or []:
            self._links[link.id] = link

    # =========================================================================
    # Basic access
    # =========================================================================

    def get(self, node_id: str) -> Optional[MemoryNode]:
        """The live record for ``node_id``, or None. Mutate it only through the store."""
        return self._nodes.get(node_id)

    def require(self, node_id: str) -> MemoryNode:
        """Like get(), but raises NotFoundError on a miss."""
        node = self._nodes.get(node_id)
        if node is None:
            raise NotFoundError("node", node_id)
        return node

    def all(self) -> List[MemoryNode]:
        return list(self._nodes.values())

    def roots(self) -> List[MemoryNode]:
        return [self._nodes[rid] for rid in self._roots]

    def size(self) -> int:
        return len(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __iter__(self) -> Iterator[MemoryNode]:
        return iter(list(self._nodes.values()))

    @property
    def entities(self) -> List[Entity]:
        return list(self._entities.values())

    @property
    def links(self) -> List[MemoryLink]:
        return list(self._links.values())

    # =========================================================================
    # Navigation
    # =========================================================================

    def parent(self, node_id: str) -> Optional[MemoryNode]:
        node = self.require(node_id)
        if node.is_root:
            return None
        return self._nodes.get(node.parent_id)

    def children(self, node_id: str) -> List[MemoryNode]:
        node = self.require(node_id)
        return [self._nodes[cid] for cid in node.children if cid in self._nodes]

    def siblings(self, node_id: str) -> List[MemoryNode]:
        node = self.require(node_id)
        if node.is_root:
            peers = list(self._roots)
        else:
            peers = self._nodes[node.parent_id].children
        return [self._nodes[pid] for pid in peers if pid != node_id]

    def ancestors(self, node_id: str) -> List[MemoryNode]:
        """Parent first, root last."""
        node = self.require(node_id)
        result = []
        while node.parent_id is not None:
            node = self._nodes[node.parent_id]
            result.append(node)
        return result

    def descendants(self, node_id: str) -> List[MemoryNode]:
        """Breadth-first, excluding the node itself."""
        self.require(node_id)
        result = []
        queue = deque([node_id])
        while queue:
            current = self._nodes[queue.popleft()]
            for cid in current.children:
                child = self._nodes.get(cid)
                if child is not None:
                    result.append(child)
                    queue.append(cid)
        return result

    def find_by_path(self, path: str) -> Optional[MemoryNode]:
        for node in self._nodes.values():
            if node.path == path:
                return node
        return None

    def find_by_depth(self, depth: int) -> List[MemoryNode]:
        return [n for n in self._nodes.values() if n.depth == depth]

    def find_by_tag(self, tag: str) -> List[MemoryNode]:
        return [n for n in self._nodes.values() if tag in n.metadata.tags]

    def is_descendant(self, node_id: str, ancestor_id: str) -> bool:
        """True if ``ancestor_id`` is a proper ancestor of ``node_id``."""
        node = self.require(node_id)
        while node.parent_id is not None:
            if node.parent_id == ancestor_id:
                return True
            node = self._nodes[node.parent_id]
        return False

    # =========================================================================
    # Tree bookkeeping (internal)
    # =========================================================================

    def _attach(self, node: MemoryNode) -> None:
        if node.is_root:
            self._roots[node.id] = None
        else:
            self._nodes[node.parent_id].children.append(node.id)

    def _detach(self, node: MemoryNode) -> None:
        if node.is_root:
            self._roots.pop(node.id, None)
        else:
            parent = self._nodes.get(node.parent_id)
            if parent is not None:
                parent.children = [cid for cid in parent.children if cid != node.id]

    def _refresh_positions(self, start_ids: Iterable[str]) -> None:
        """Recompute depth/path for each start node and its whole subtree (explicit worklist)."""
        stack = list(start_ids)
        while stack:
            node = self._nodes[stack.pop()]
            if node.is_root:
                node.depth = 0
                node.path = f"/{node.id}"
            else:
                parent = self._nodes[node.parent_id]
                node.depth = parent.depth + 1
                node.path = f"{parent.path}/{node.id}"
            stack.extend(cid for cid in node.children if cid in self._nodes)

    def _stamp_modified(self, node: MemoryNode) -> None:
        node.temporal = dataclasses.replace(node.temporal, modified=self.clock())

    # =========================================================================
    # Mutations
    # =========================================================================

    def add(self, node: MemoryNode) -> str:
        """
        Insert a node (and index its embedding).

        Depth and path are derived from the parent. The parent must already
        exist; a node arriving with children must go through load().

        Returns:
            The node id

        Raises:
            StructuralError: Duplicate id, or the node already lists children
            NotFoundError: The declared parent does not exist
            CapacityError / DimensionError: The index rejected the embedding
        """
        with self._lock:
            self._add(node)
            self.deltas.record_add(node)
        logger.debug(f"Added node {node.id} at {node.path}")
        return node.id

    def _add(self, node: MemoryNode) -> None:
        if node.id in self._nodes:
            raise StructuralError(f"Node {node.id!r} already exists")
        if node.children:
            raise StructuralError(
                f"Node {node.id!r} already lists children; use load() for subtrees"
            )
        if node.parent_id is not None and node.parent_id not in self._nodes:
            raise NotFoundError("parent node", node.parent_id)

        if node.has_embedding:
            self.index.insert(node.id, node.embedding)

        self._nodes[node.id] = node
        self._attach(node)
        self._refresh_positions([node.id])

    def add_child(
        self,
        parent_id: str,
        content: Union[str, bytes, NodeContent],
        *,
        type: Union[ContentType, str] = ContentType.TEXT,
        tags: Optional[List[str]] = None,
        custom: Optional[Dict[str, Any]] = None,
        embedding: Optional[vectors.VectorLike] = None,
        **fields: Any
    ) -> str:
        """
        Create a node under ``parent_id`` with fresh id and default values.

        Extra keyword fields (quality, temporal, metadata, embedding_model, ...)
        override the defaults; structural fields are refused.

        Returns:
            The new node id
        """
        self.require(parent_id)
        blocked = STRUCTURAL_FIELDS & fields.keys()
        if blocked:
            raise StructuralError(f"Cannot set structural fields on a new child: {sorted(blocked)}")
        unknown = fields.keys() - _NODE_FIELDS
        if unknown:
            raise StructuralError(f"Unknown node fields: {sorted(unknown)}")

        if isinstance(content, NodeContent):
            node = create_node("", ids=self.ids, now=self.clock(), tags=tags, custom=custom, embedding=embedding)
            node.content = content
        else:
            node = create_node(
                content, type=type, tags=tags, custom=custom,
                embedding=embedding, ids=self.ids, now=self.clock()
            )
        node.parent_id = parent_id
        for key, value in fields.items():
            setattr(node, key, value)
        if node.embedding is not None:
            node.embedding = vectors.as_vector(node.embedding)
        return self.add(node)

    def update(self, node_id: str, fields: Dict[str, Any]) -> MemoryNode:
        """
        Merge partial fields into a node.

        Sub-records (content, temporal, quality, metadata) accept a dict that
        is merged into the current record, or a full record. ``temporal.modified``
        is always set to now, whatever the caller passed.

        Returns:
            The updated live record

        Raises:
            NotFoundError: Unknown id
            StructuralError: Structural or unknown fields; use move() to reparent
        """
        with self._lock:
            node = self.require(node_id)
            changes = self._merge(node, fields)
            self._commit(node, changes)
            self._stamp_modified(node)
            changes["temporal"] = node.temporal
            self.deltas.record_update(node_id, changes)
        return node

    def _merge(self, node: MemoryNode, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Validate ``fields`` and build the new values without touching the node."""
        blocked = STRUCTURAL_FIELDS & fields.keys()
        if blocked:
            raise StructuralError(f"Cannot update structural fields {sorted(blocked)}; use move()")
        unknown = fields.keys() - _NODE_FIELDS
        if unknown:
            raise StructuralError(f"Unknown node fields: {sorted(unknown)}")

        changes: Dict[str, Any] = {}
        for key, value in fields.items():
            record_cls = NODE_RECORDS.get(key)
            if record_cls is not None:
                if isinstance(value, record_cls):
                    changes[key] = dataclasses.replace(value)
                elif isinstance(value, dict):
                    merged = getattr(node, key).to_dict()
                    merged.update(to_plain(value))
                    changes[key] = record_cls.from_dict(merged)
                else:
                    raise StructuralError(f"{key} must be a {record_cls.__name__} or a dict")
            elif key == "embedding":
                changes[key] = None if value is None else vectors.as_vector(value)
            else:
                changes[key] = value

        if changes.get("embedding") is not None:
            vectors.check_dimensions(changes["embedding"], getattr(self.index, "dimensions", None))
            # A replaced vector leaves a tombstone, so it needs a fresh slot too
            if not self.index.has_capacity():
                raise CapacityError("Similarity index is full; rebuild or raise max_elements")
        return changes

    def _commit(self, node: MemoryNode, changes: Dict[str, Any]) -> None:
        if "embedding" in changes:
            self.index.remove(node.id)
            if changes["embedding"] is not None and changes["embedding"].size:
                self.index.insert(node.id, changes["embedding"])
        for key, value in changes.items():
            setattr(node, key, value)

    def delete(self, node_id: str, cascade: bool = False) -> List[str]:
        """
        Remove a node.

        Without ``cascade`` the node's children move up to its parent (or
        become roots) and their subtrees get fresh depths and paths. With
        ``cascade`` the whole subtree goes.

        Returns:
            Ids removed, deepest first
        """
        with self._lock:
            removed = self._delete(node_id, cascade)
            for rid in removed:
                self.deltas.record_delete(rid)
        logger.debug(f"Deleted {len(removed)} node(s) starting at {node_id} (cascade={cascade})")
        return removed

    def _delete(self, node_id: str, cascade: bool) -> List[str]:
        node = self.require(node_id)
        removed: List[str] = []

        # Index first, always
        self.index.remove(node_id)

        if cascade:
            for descendant in reversed(self.descendants(node_id)):
                self.index.remove(descendant.id)
                del self._nodes[descendant.id]
                removed.append(descendant.id)
        else:
            orphans = [cid for cid in node.children if cid in self._nodes]
            for cid in orphans:
                self._nodes[cid].parent_id = node.parent_id
            if node.parent_id is None:
                for cid in orphans:
                    self._roots[cid] = None
            else:
                # Children take the deleted node's slot in the grandparent
                grandparent = self._nodes[node.parent_id]
                slot = grandparent.children.index(node_id)
                grandparent.children[slot:slot + 1] = [node_id] + orphans
            self._refresh_positions(orphans)

        self._detach(node)
        del self._nodes[node_id]
        removed.append(node_id)
        return removed

    def move(self, node_id: str, new_parent_id: Optional[str]) -> MemoryNode:
        """
        Reparent a node (None promotes it to root) and refresh its subtree.

        Raises:
            NotFoundError: Unknown node or new parent
            StructuralError: The new parent is the node itself or one of its descendants
        """
        with self._lock:
            node = self._move(node_id, new_parent_id)
            self._stamp_modified(node)
            self.deltas.record_update(node_id, {"parent_id": new_parent_id, "temporal": node.temporal})
        logger.debug(f"Moved node {node_id} to {node.path}")
        return node

    def _check_move(self, node_id: str, new_parent_id: Optional[str]) -> MemoryNode:
        node = self.require(node_id)
        if new_parent_id is not None:
            if new_parent_id not in self._nodes:
                raise NotFoundError("parent node", new_parent_id)
            if new_parent_id == node_id or self.is_descendant(new_parent_id, node_id):
                raise StructuralError(
                    f"Cannot move {node_id!r} under {new_parent_id!r}: it is in the moved subtree"
                )
        return node

    def _move(self, node_id: str, new_parent_id: Optional[str]) -> MemoryNode:
        node = self._check_move(node_id, new_parent_id)
        self._detach(node)
        node.parent_id = new_parent_id
        self._attach(node)
        self._refresh_positions([node_id])
        return node

    def load(self, nodes: Iterable[MemoryNode]) -> int:
        """
        Bulk-load nodes (e.g. from a container) without logging deltas.

        Child lists are rebuilt from parent pointers (keeping the stored order
        where it agrees), depths and paths are recomputed and embeddings are
        indexed. Nothing is committed if validation fails.

        Returns:
            Number of nodes loaded

        Raises:
            StructuralError: Duplicate ids or a parent cycle
            NotFoundError: A parent missing from both the batch and the store
        """
        incoming: Dict[str, MemoryNode] = {}
        for node in nodes:
            if node.id in incoming or node.id in self._nodes:
                raise StructuralError(f"Node {node.id!r} already exists")
            incoming[node.id] = node
        if not incoming:
            return 0

        with self._lock:
            pointers: Dict[str, List[str]] = {}
            for node in incoming.values():
                if node.parent_id is None:
                    continue
                if node.parent_id not in incoming and node.parent_id not in self._nodes:
                    raise NotFoundError("parent node", node.parent_id)
                pointers.setdefault(node.parent_id, []).append(node.id)

            # Every node must hang off a root or an existing node, else there is a cycle
            reachable = 0
            queue = deque(nid for nid, n in incoming.items()
                          if n.parent_id is None or n.parent_id in self._nodes)
            while queue:
                nid = queue.popleft()
                reachable += 1
                queue.extend(pointers.get(nid, []))
            if reachable != len(incoming):
                raise StructuralError("Parent pointers contain a cycle")

            embedded = [n for n in incoming.values() if n.has_embedding]
            if not self.index.has_capacity(len(embedded)):
                raise CapacityError(
                    f"Similarity index cannot take {len(embedded)} more vectors; raise max_elements"
                )
            expected = getattr(self.index, "dimensions", None)
            for node in embedded:
                vectors.check_dimensions(node.embedding, expected)
                expected = expected or node.embedding.shape[0]

            for node in incoming.values():
                child_ids = pointers.get(node.id, [])
                wanted = set(child_ids)
                ordered = [cid for cid in node.children if cid in wanted]
                seen = set(ordered)
                node.children = ordered + [cid for cid in child_ids if cid not in seen]
                self._nodes[node.id] = node

            starts = []
            for node in incoming.values():
                if node.parent_id is None:
                    self._roots[node.id] = None
                    starts.append(node.id)
                elif node.parent_id in self._nodes and node.parent_id not in incoming:
                    self._nodes[node.parent_id].children.append(node.id)
                    starts.append(node.id)
            self._refresh_positions(starts)

            for node in embedded:
                self.index.insert(node.id, node.embedding)

        logger.info(f"Loaded {len(incoming)} nodes ({len(embedded)} embedded)")
        return len(incoming)

    # =========================================================================
    # Entities and links
    # =========================================================================

    def add_entity(self, entity: Entity) -> str:
        with self._lock:
            self._entities[entity.id] = entity
        return entity.id

    def get_entity(self, entity_id: str) -> Optional[Entity]:
        return self._entities.get(entity_id)

    def entities_for(self, node_id: str) -> List[Entity]:
        """Entities with a mention in ``node_id``."""
        return [e for e in self._entities.values() if e.mentions_node(node_id)]

    def add_link(self, link: MemoryLink) -> str:
        with self._lock:
            if link.id in self._links:
                raise StructuralError(f"Link {link.id!r} already exists")
            self._links[link.id] = link
            self.deltas.record_link(link)
        return link.id

    def remove_link(self, link_id: str) -> MemoryLink:
        with self._lock:
            link = self._links.pop(link_id, None)
            if link is None:
                raise NotFoundError("link", link_id)
            self.deltas.record_unlink(link_id)
        return link

    def links_for(self, node_id: str) -> List[MemoryLink]:
        return [link for link in self._links.values() if link.touches(node_id)]

    # =========================================================================
    # Replay
    # =========================================================================

    def apply(self, delta: Delta) -> None:
        """
        Replay one delta produced by another store's log.

        The delta is appended to this store's log unchanged.
        """
        with self._lock:
            op = delta.operation
            if op == DeltaOperation.ADD:
                node = delta.node.copy()
                node.children = []
                self._add(node)
            elif op == DeltaOperation.UPDATE:
                updates = dict(delta.updates or {})
                moving = "parent_id" in updates
                new_parent_id = updates.pop("parent_id", None)
                for key in ("depth", "path", "children", "id"):
                    updates.pop(key, None)
                node = self.require(delta.node_id)
                # Validate both halves before either is applied
                if moving:
                    self._check_move(delta.node_id, new_parent_id)
                changes = self._merge(node, updates) if updates else {}
                if moving:
                    self._move(delta.node_id, new_parent_id)
                if changes:
                    self._commit(node, changes)
            elif op == DeltaOperation.DELETE:
                self._delete(delta.node_id, cascade=False)
            elif op == DeltaOperation.LINK:
                self._links[delta.link.id] = delta.link
            elif op == DeltaOperation.UNLINK:
                if self._links.pop(delta.link_id, None) is None:
                    raise NotFoundError("link", delta.link_id)
            self.deltas.extend([delta])

    def apply_all(self, deltas: Iterable[Delta]) -> int:
        count = 0
        for delta in deltas:
            self.apply(delta)
            count += 1
        return count

    # =========================================================================
    # Temporal housekeeping
    # =========================================================================

    def touch(self, node_id: str) -> MemoryNode:
        """Record an access: refresh ``accessed`` and the decay tier."""
        with self._lock:
            node = self.require(node_id)
            now = self.clock()
            node.temporal = dataclasses.replace(node.temporal, accessed=now)
            node.temporal.decay_tier = get_decay_tier(node, now=now)
            self.deltas.record_update(node_id, {"temporal": node.temporal})
        return node

    def refresh_decay_tiers(self, config: Optional[DecayConfig] = None) -> int:
        """
        Recompute every node's decay tier.

        Purges expired nodes first when ``config.delete_on_expire`` is set.

        Returns:
            Number of nodes whose tier changed
        """
        config = config or DecayConfig.from_settings()
        now = self.clock()
        changed = 0
        with self._lock:
            if config.delete_on_expire:
                self.purge_expired()
            for node in self._nodes.values():
                tier = get_decay_tier(node, config, now)
                if tier != node.temporal.decay_tier:
                    node.temporal = dataclasses.replace(node.temporal, decay_tier=tier)
                    self.deltas.record_update(node.id, {"temporal": node.temporal})
                    changed += 1
        if changed:
            logger.info(f"Decay tiers changed for {changed} node(s)")
        return changed

    def expired(self) -> List[MemoryNode]:
        now = self.clock()
        return [n for n in self._nodes.values() if is_expired(n, now)]

    def purge_expired(self) -> int:
        """Cascade-delete expired nodes. Returns the number of nodes removed."""
        removed = 0
        with self._lock:
            for node in self.expired():
                if node.id in self._nodes:
                    removed += len(self.delete(node.id, cascade=True))
        return removed

    # =========================================================================
    # Similarity index and search
    # =========================================================================

    @property
    def has_approximate_index(self) -> bool:
        return not self.index.exact

    def _embedded_items(self) -> List[Tuple[str, np.ndarray]]:
        return [(n.id, n.embedding) for n in self._nodes.values() if n.has_embedding]

    def build_index(self, config: Optional[IndexConfig] = None) -> int:
        """
        Index embedded nodes that are not indexed yet.

        Passing a config while the store uses the exact index switches it to
        an approximate index first. Idempotent.

        Returns:
            Number of vectors added
        """
        with self._lock:
            if config is not None and self.index.exact:
                self.index = create_index(config)
            pending = [(nid, vec) for nid, vec in self._embedded_items() if nid not in self.index]
            if not self.index.has_capacity(len(pending)):
                raise CapacityError(
                    f"Similarity index cannot take {len(pending)} more vectors; raise max_elements"
                )
            for nid, vec in pending:
                self.index.insert(nid, vec)
        logger.info(f"Indexed {len(pending)} node(s)")
        return len(pending)

    def rebuild_index(self, capacity: Optional[int] = None) -> Dict[str, Any]:
        """
        Compact the index: drop tombstones and reinsert every live vector.

        Returns:
            Index stats after the rebuild
        """
        with self._lock:
            self.index.rebuild(self._embedded_items(), capacity)
        return self.index.stats()

    def index_stats(self) -> Dict[str, Any]:
        return self.index.stats()

    def nearest(self, query: vectors.VectorLike, k: int = 10) -> List[Tuple[MemoryNode, float]]:
        """Raw k-nearest neighbours as (node, distance), no scoring or filters."""
        return [(self._nodes[nid], dist) for nid, dist in self.index.search(query, k)]

    def search(
        self,
        query: vectors.VectorLike,
        options: Optional[SearchOptions] = None,
        **kwargs: Any
    ) -> List[SearchResult]:
        """
        Ranked similarity search.

        Options may be passed as a SearchOptions or as keyword arguments
        (top_k, min_score, filters, time_decay, include_archived).
        """
        if options is None:
            options = SearchOptions(**kwargs)
        elif kwargs:
            options = dataclasses.replace(options, **kwargs)
        return ScoringEngine(now=self.clock).search(self, query, options)
