"""Root-level pytest fixtures for all tests.

Provides shared fixtures:
- In-memory SQLite session with all tables created
- Status mapping cache reset between tests
- Helpers for registering shipments and building timestamps
"""

from collections.abc import Callable, Generator
from datetime import UTC, datetime

import pytest
from sqlalchemy.orm import Session, sessionmaker

from src.db.connection import create_db_engine, init_db
from src.db.models import Shipment
from src.services import mapping_cache
from src.services.shipment_service import ShipmentService

TENANT = "acme"
OTHER_TENANT = "globex"


# ============================================================================
# Pytest Markers
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests that take a long time to run"
    )


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def db_session() -> Generator[Session, None, None]:
    """Create an in-memory SQLite database session.

    Creates all tables, yields a session, and disposes the engine after
    the test.
    """
    engine = create_db_engine("sqlite:///:memory:")
    init_db(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture(autouse=True)
def _reset_mapping_cache(monkeypatch):
    """Rule lists are cached per process; every test starts cold."""
    monkeypatch.setenv("STATUS_MAPPING_CACHE_ENABLED", "true")
    mapping_cache.invalidate()
    yield
    mapping_cache.invalidate()


# ============================================================================
# Test Data Fixtures
# ============================================================================


@pytest.fixture
def tenant_id() -> str:
    return TENANT


@pytest.fixture
def other_tenant_id() -> str:
    return OTHER_TENANT


@pytest.fixture
def at() -> Callable[..., datetime]:
    """Build aware UTC datetimes on a fixed day: at(10, 30) -> 10:30 UTC."""

    def _at(hour: int = 0, minute: int = 0, day: int = 15) -> datetime:
        return datetime(2026, 3, day, hour, minute, tzinfo=UTC)

    return _at


@pytest.fixture
def register_shipment(db_session: Session) -> Callable[..., Shipment]:
    """Register a shipment for an order and return it."""

    def _register(
        tracking_number: str = "AWB100001",
        order_id: str = "ORD-1",
        courier: str = "aramex",
        tenant_id: str = TENANT,
        region: str | None = None,
        created_at: datetime | None = None,
    ) -> Shipment:
        return ShipmentService(db_session).register_shipment(
            tenant_id,
            order_id,
            tracking_number,
            courier,
            region=region,
            created_at=created_at,
        )

    return _register
