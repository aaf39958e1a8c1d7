"""
Temporal operations - decay tiers, access tracking and expiry.

A node's decay tier is a coarse bucket derived from the time since it was
last accessed. Tiers feed search filtering (archived nodes are hidden by
default) while the continuous ``time_decay`` factor is applied at scoring.
"""

import dataclasses
from dataclasses import dataclass
from typing import Optional

from .config import settings
from .models import DecayTier, MemoryNode, now_ms

MS_PER_DAY = 24 * 60 * 60 * 1000


@dataclass
class DecayConfig:
    """
    Thresholds (days since last access) separating the decay tiers.

    Attributes:
        hot_days: Below this a node is hot
        warm_days: Below this a node is warm
        cold_days: Below this a node is cold, otherwise archived
        archive_days: Horizon reported for archive housekeeping
        summarize_on_cold: Hint for collaborators that summarize cold nodes
        delete_on_expire: Whether purge_expired runs during tier refresh
    """
    hot_days: float = 7.0
    warm_days: float = 30.0
    cold_days: float = 90.0
    archive_days: float = 365.0
    summarize_on_cold: bool = True
    delete_on_expire: bool = False

    @classmethod
    def from_settings(cls) -> "DecayConfig":
        return cls(
            hot_days=settings.decay_hot_days,
            warm_days=settings.decay_warm_days,
            cold_days=settings.decay_cold_days,
            archive_days=settings.decay_archive_days,
            summarize_on_cold=settings.decay_summarize_on_cold,
            delete_on_expire=settings.decay_delete_on_expire,
        )


def days_since(timestamp_ms: int, now: Optional[int] = None) -> float:
    """Days elapsed between ``timestamp_ms`` and ``now`` (never negative)."""
    now = now_ms() if now is None else now
    return max(0.0, (now - timestamp_ms) / MS_PER_DAY)


def get_decay_tier(
    node: MemoryNode,
    config: Optional[DecayConfig] = None,
    now: Optional[int] = None
) -> DecayTier:
    """Bucket a node by days since last access."""
    config = config or DecayConfig.from_settings()
    age = days_since(node.temporal.accessed, now)

    if age < config.hot_days:
        return DecayTier.HOT
    if age < config.warm_days:
        return DecayTier.WARM
    if age < config.cold_days:
        return DecayTier.COLD
    return DecayTier.ARCHIVE


def touch_node(node: MemoryNode, now: Optional[int] = None) -> MemoryNode:
    """Return a copy of ``node`` with its access time refreshed."""
    now = now_ms() if now is None else now
    touched = node.copy()
    touched.temporal = dataclasses.replace(node.temporal, accessed=now)
    return touched


def is_expired(node: MemoryNode, now: Optional[int] = None) -> bool:
    """True when the node has an expiry in the past."""
    if node.temporal.expires is None:
        return False
    now = now_ms() if now is None else now
    return now > node.temporal.expires
