"""
Shared fixtures for diffdb tests.
"""

import os
import tempfile
from dataclasses import dataclass, field
from typing import Any

import pytest
import pytest_asyncio

from diffdb import DiffDB
from diffdb.store import MemoryStore, SqliteStore


@dataclass
class Item:
    """Minimal trackable object used throughout the tests."""

    key: str
    value: Any = None
    tags: list[str] = field(default_factory=list)

    def object_id(self) -> bytes:
        return self.key.encode()


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture(params=["memory", "sqlite"])
def store(request, data_dir):
    """Store of every backend."""
    if request.param == "memory":
        return MemoryStore()
    return SqliteStore(os.path.join(data_dir, "test.db"), wal_mode=False, cursor_page_size=2)


@pytest.fixture
def db(store):
    """DiffDB on the parametrized store."""
    return DiffDB(store)


@pytest_asyncio.fixture
async def diff(db):
    """Freshly opened differential."""
    return await db.open("test")
