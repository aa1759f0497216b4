"""Pytest fixtures for API tests.

Provides test client and database session fixtures for testing
FastAPI endpoints.
"""

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker

from src.api.main import app
from src.db.connection import create_db_engine, get_db, init_db


@pytest.fixture
def test_db() -> Generator[Session, None, None]:
    """Create an in-memory SQLite database for testing.

    Creates all tables, yields a session, and cleans up after test.
    """
    engine = create_db_engine("sqlite:///:memory:")
    init_db(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(test_db: Session, monkeypatch, tmp_path) -> Generator[TestClient, None, None]:
    """Create a TestClient with overridden database dependency.

    Runs from an empty directory so no local config file is picked up.

    Yields:
        TestClient configured for testing.
    """
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.delenv("FULFILLMENT_API_KEY", raising=False)
    monkeypatch.delenv("FULFILLMENT_CONFIG_PATH", raising=False)

    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def headers() -> dict[str, str]:
    """Tenant headers for the default test tenant."""
    return {"X-Tenant-ID": "acme"}
