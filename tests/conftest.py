"""
Pytest configuration and shared fixtures.

The test database URL is pinned here, before any messenger import, so the
module-level engine is bound to it.
"""

import os

os.environ["DATABASE_URL"] = "sqlite:///./test_messenger.db"
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports to ensure test env vars are used
from messenger.config import get_settings
get_settings.cache_clear()

from messenger.main import app
from messenger.storage import Base, SessionLocal, engine


@pytest.fixture
def schema():
    """Fresh tables for each test."""
    from messenger import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(schema):
    """Create test client with fresh database for each test."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def db(schema):
    """Database session for store-level tests."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def registry():
    """The application's session registry."""
    return app.state.sessions


@pytest.fixture
def connect(registry):
    """
    Register fake channels on the application's registry.

    Everything registered through this fixture is unregistered afterwards so
    no state leaks between tests.
    """
    registered = []

    def _connect(user_id, channel):
        registry.register(user_id, channel)
        registered.append((user_id, channel))
        return channel

    yield _connect

    for user_id, channel in registered:
        registry.unregister(user_id, channel)
