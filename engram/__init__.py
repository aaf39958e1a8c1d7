"""
Engram Core Package

Hierarchical, temporally-aware memory store with similarity search and a
portable, optionally encrypted container format.
"""

try:
    from importlib.metadata import version as _get_version
    __version__ = _get_version("engram")
except Exception:
    # Fallback for development or if package not installed
    __version__ = "1.0.0"

from .codec import load, read_container, read_file, save, write_container, write_file
from .errors import (
    CapacityError,
    CryptoError,
    DimensionError,
    EngramError,
    FormatError,
    IntegrityError,
    NotFoundError,
    PassphraseRequiredError,
    StructuralError,
)
from .index import IndexConfig
from .models import EngramFile, MemoryNode, create_link, create_node
from .scoring import SearchFilters, SearchOptions, SearchResult
from .store import MemoryStore

__all__ = [
    "CapacityError",
    "CryptoError",
    "DimensionError",
    "EngramError",
    "EngramFile",
    "FormatError",
    "IndexConfig",
    "IntegrityError",
    "MemoryNode",
    "MemoryStore",
    "NotFoundError",
    "PassphraseRequiredError",
    "SearchFilters",
    "SearchOptions",
    "SearchResult",
    "StructuralError",
    "create_link",
    "create_node",
    "load",
    "read_container",
    "read_file",
    "save",
    "write_container",
    "write_file",
]
