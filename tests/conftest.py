"""Shared test fixtures for the test suite."""
import pytest
import pytest_asyncio

from analytics.states import StateTaxonomy
from storage import SQLAlchemyStore


@pytest.fixture
def taxonomy():
    """Return the built-in state taxonomy."""
    return StateTaxonomy()


@pytest.fixture
def test_db_url(tmp_path):
    """Return a SQLite database URL backed by a temporary file."""
    return f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"


@pytest_asyncio.fixture
async def store(test_db_url):
    """Create a SQLAlchemyStore with tables on a fresh temporary database."""
    store = SQLAlchemyStore(test_db_url)
    await store.ensure_tables()

    yield store

    await store.close()

