# tests/conftest.py
"""
Pytest configuration for Engram tests.
"""

import shutil
import tempfile

import pytest

from engram.index import IndexConfig
from engram.models import create_node
from engram.store import MemoryStore

START_MS = 1_700_000_000_000


class FakeClock:
    """Deterministic epoch-millisecond clock."""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int = 1) -> int:
        self.now += ms
        return self.now

    def advance_days(self, days: float) -> int:
        return self.advance(int(days * 24 * 60 * 60 * 1000))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    """Store with the exact (linear-scan) index."""
    return MemoryStore(clock=clock)


@pytest.fixture
def ann_store(clock):
    """Store with a small HNSW index over 3-dimensional vectors."""
    return MemoryStore(index_config=IndexConfig(dimensions=3, max_elements=100), clock=clock)


@pytest.fixture
def make_node():
    """Build a detached node with the store's ids and clock."""
    def _make(store, content="note", embedding=None, parent_id=None, **kwargs):
        return create_node(
            content,
            parent_id=parent_id,
            embedding=embedding,
            ids=store.ids,
            now=store.clock(),
            **kwargs,
        )
    return _make


@pytest.fixture
def temp_dir():
    """Create a temporary directory for container files."""
    path = tempfile.mkdtemp()
    yield path
    shutil.rmtree(path, ignore_errors=True)
