# tests/conftest.py
"""
Pytest configuration for CoworkMemory tests.
"""

import shutil
import tempfile

import pytest

from cowork_memory.database import DatabaseManager
from cowork_memory.engine import MemoryEngine

# Register pytest-asyncio plugin
pytest_plugins = ('pytest_asyncio',)

HOUR_MS = 60 * 60 * 1000


def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as an asyncio test."
    )


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.ms = start_ms

    def __call__(self) -> int:
        return self.ms

    def advance(self, hours: float = 0, ms: int = 0) -> int:
        self.ms += int(hours * HOUR_MS) + ms
        return self.ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def temp_storage():
    """Create a temporary storage directory."""
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
async def db_manager(temp_storage):
    """Create a database manager with temporary storage."""
    db = DatabaseManager(temp_storage)
    await db.init_db()
    yield db
    await db.close()


@pytest.fixture
async def engine(temp_storage, clock):
    """An initialized engine whose project is the temporary directory."""
    db = DatabaseManager(temp_storage)
    memory_engine = MemoryEngine(db, working_dir=temp_storage, clock=clock)
    await memory_engine.initialize()
    yield memory_engine
    await memory_engine.close()
