"""
Global pytest configuration and shared fixtures.

Provides common test infrastructure for all test suites including:
- In-memory database engine and session factory
- ProgressStore on top of it
- In-memory task and XP services
- A fully wired AdventureEngine

Task builders live in tests/fixtures/tasks.py.
"""

from collections.abc import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from questmap import config
from questmap.db import init_db, make_session_factory
from questmap.engine.adventure import AdventureEngine
from questmap.engine.catalog import WorldCatalog
from questmap.engine.progress import ProgressStore
from questmap.engine.rewards import InMemoryXpService
from questmap.engine.tasks import InMemoryTaskSource

USER_ID = "alice"


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create in-memory SQLite database engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,  # Use StaticPool to share single connection
        echo=False,
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def file_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine; every session gets its own connection."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'questmap-test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return make_session_factory(test_engine)


@pytest.fixture
def store(session_factory) -> ProgressStore:
    return ProgressStore(session_factory, retry_backoff=0)


# ============================================================================
# Engine Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def catalog() -> WorldCatalog:
    """The shipped eight-world catalog."""
    return WorldCatalog.from_yaml(config.WORLD_DATA)


@pytest.fixture
def task_source() -> InMemoryTaskSource:
    return InMemoryTaskSource()


@pytest.fixture
def xp_service() -> InMemoryXpService:
    return InMemoryXpService()


@pytest.fixture
def adventure(catalog, store, task_source, xp_service) -> AdventureEngine:
    """AdventureEngine over the in-memory database and services, UTC calendar days."""
    return AdventureEngine(catalog, store, task_source, xp_service, upstream_timeout=1.0, timezone="UTC")


@pytest.fixture
def user_id() -> str:
    return USER_ID
