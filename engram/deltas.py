"""
Delta Log - append-only record of store mutations.

Used for incremental synchronization and checkpointing:
- every MemoryStore mutation appends one delta (cascading deletes append one per node)
- checkpoint() remembers the log length without touching state
- since(position) returns the suffix a replica still needs
- compact() drops the history; consumers holding a position from before the
  compaction will see a gap and must resync from a full container
"""

import logging
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from .ids import IdGenerator
from .models import Delta, DeltaOperation, MemoryLink, MemoryNode, now_ms

logger = logging.getLogger(__name__)


class DeltaLog:
    """
    Strictly ordered, append-only sequence of deltas plus a checkpoint marker.

    Timestamps never go backwards: a clock reading older than the previous
    entry is clamped to it, so position order and time order agree.
    """

    def __init__(
        self,
        deltas: Optional[Iterable[Delta]] = None,
        ids: Optional[IdGenerator] = None,
        clock: Optional[Callable[[], int]] = None
    ):
        self._deltas: List[Delta] = list(deltas or [])
        self._checkpoint = 0
        self.ids = ids or IdGenerator(prefix="delta")
        self.clock = clock or now_ms

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def _timestamp(self) -> int:
        ts = self.clock()
        if self._deltas and ts < self._deltas[-1].timestamp:
            ts = self._deltas[-1].timestamp
        return ts

    def _append(self, operation: DeltaOperation, **payload) -> Delta:
        delta = Delta(id=self.ids.next(), timestamp=self._timestamp(), operation=operation, **payload)
        self._deltas.append(delta)
        return delta

    def record_add(self, node: MemoryNode) -> Delta:
        # Snapshot so later mutations of the live record don't rewrite history
        return self._append(DeltaOperation.ADD, node=node.copy(), node_id=node.id)

    def record_update(self, node_id: str, updates: Dict[str, Any]) -> Delta:
        return self._append(DeltaOperation.UPDATE, node_id=node_id, updates=dict(updates))

    def record_delete(self, node_id: str) -> Delta:
        return self._append(DeltaOperation.DELETE, node_id=node_id)

    def record_link(self, link: MemoryLink) -> Delta:
        return self._append(DeltaOperation.LINK, link=link)

    def record_unlink(self, link_id: str) -> Delta:
        return self._append(DeltaOperation.UNLINK, link_id=link_id)

    def extend(self, deltas: Iterable[Delta]) -> None:
        """Append externally produced deltas unchanged (replica replay)."""
        for delta in deltas:
            if self._deltas and delta.timestamp < self._deltas[-1].timestamp:
                logger.warning(
                    f"Delta {delta.id} is older than the log tail; appended in arrival order"
                )
            self._deltas.append(delta)

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    @property
    def position(self) -> int:
        """Current log length."""
        return len(self._deltas)

    @property
    def checkpoint_position(self) -> int:
        return self._checkpoint

    def checkpoint(self) -> int:
        """Mark the current position and return it."""
        self._checkpoint = len(self._deltas)
        logger.debug(f"Checkpoint at delta {self._checkpoint}")
        return self._checkpoint

    def compact(self) -> int:
        """
        Clear the log and reset the checkpoint.

        Returns the number of deltas discarded.
        """
        dropped = len(self._deltas)
        self._deltas = []
        self._checkpoint = 0
        logger.info(f"Compacted delta log ({dropped} deltas discarded)")
        return dropped

    def since(self, position: int) -> List[Delta]:
        """Deltas from ``position`` onward (empty past the end)."""
        if position < 0:
            raise ValueError("position must be non-negative")
        return self._deltas[position:]

    def since_checkpoint(self) -> List[Delta]:
        return self.since(self._checkpoint)

    def __iter__(self) -> Iterator[Delta]:
        return iter(list(self._deltas))

    def __len__(self) -> int:
        return len(self._deltas)
