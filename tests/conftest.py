from collections.abc import AsyncIterator

import pytest

from ops_agent.config import CacheConfig
from ops_agent.memory.fast_tier import TTLCache
from ops_agent.memory.manager import MemoryManager
from ops_agent.store.database import Database


@pytest.fixture
async def database(tmp_path) -> AsyncIterator[Database]:
    db = Database(tmp_path / "ops_agent.db")
    await db.connect()
    yield db
    await db.close()


@pytest.fixture
async def memory(database: Database) -> AsyncIterator[MemoryManager]:
    manager = MemoryManager(database, TTLCache(), config=CacheConfig())
    yield manager
    await manager.drain()
