"""
Pytest configuration and shared test fixtures.

This module provides the test client and fixtures for mocked sessions,
users and a recording event bus.
"""

import os

os.environ.setdefault("APP_ENVIRONMENT", "test")

from typing import Generator
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession

from src.database.models.user import User, UserRole
from src.main import app
from tests.factories import RecordingEventBus, build_user


@pytest.fixture
def mock_session() -> AsyncMock:
    """Mock async database session."""
    session = AsyncMock(spec=AsyncSession)
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.flush = AsyncMock()
    return session


@pytest.fixture
def event_bus() -> RecordingEventBus:
    return RecordingEventBus()


@pytest.fixture
def customer() -> User:
    return build_user()


@pytest.fixture
def admin_user() -> User:
    return build_user(role=UserRole.ADMIN, email="admin@example.com")


@pytest.fixture(scope="function")
def test_client() -> Generator[TestClient, None, None]:
    """
    Synchronous test client for the FastAPI application.

    Dependency overrides installed by a test are removed afterwards.
    """
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()
