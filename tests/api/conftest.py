"""API test specific fixtures."""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from questmap import config
from questmap.db import make_session_factory
from questmap.engine.adventure import AdventureEngine
from questmap.engine.progress import ProgressStore
from questmap.main import app


@pytest.fixture
def api_engine(catalog, task_source, xp_service) -> AdventureEngine:
    """
    AdventureEngine over its own in-memory database.

    Nothing here touches the database; the app's lifespan creates the tables
    inside the TestClient's event loop.
    """
    db_engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    app.state.db_engine = db_engine
    store = ProgressStore(make_session_factory(db_engine), retry_backoff=0)
    return AdventureEngine(catalog, store, task_source, xp_service, upstream_timeout=1.0, timezone="UTC")


@pytest.fixture
def test_client(api_engine):
    """Create FastAPI TestClient for API endpoint testing."""
    app.state.adventure_engine = api_engine
    with TestClient(app) as client:
        yield client
    del app.state.adventure_engine
    del app.state.db_engine


@pytest.fixture
def auth_headers(user_id):
    """Headers identifying the calling user."""
    return {config.USER_HEADER: user_id, "Content-Type": "application/json"}


@pytest.fixture
def api_prefix():
    return config.API_PREFIX
