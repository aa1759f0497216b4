"""Engine and session management for the fulfillment tracker.

One synchronous SQLAlchemy engine per process. Webhook handlers, the
CLI and the SLA sweep all open short-lived sessions from SessionLocal;
each ingested event commits as its own unit of work.

Usage:
    from src.db.connection import get_db_context, init_db

    init_db()
    with get_db_context() as db:
        ...
"""

import logging
import os
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from src.db.models import Base

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///./fulfillment.db"


def get_database_url() -> str:
    """Resolve the database URL.

    Precedence:
    1. DATABASE_URL (any SQLAlchemy URL)
    2. FULFILLMENT_DB_PATH (file path, or a sqlite: URL)
    3. ./fulfillment.db
    """
    database_url = os.environ.get("DATABASE_URL", "").strip()
    if database_url:
        return database_url

    db_path = os.environ.get("FULFILLMENT_DB_PATH", "").strip()
    if db_path:
        return db_path if db_path.startswith("sqlite:") else f"sqlite:///{db_path}"

    return DEFAULT_DATABASE_URL


def create_db_engine(url: str, echo: bool = False) -> Engine:
    """Build an engine with the SQLite settings the services rely on.

    In-memory SQLite shares one connection across threads so that
    FastAPI's threadpool and the caller see the same database.
    """
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo, pool_pre_ping=True)

    in_memory = url in ("sqlite://", "sqlite:///:memory:")
    db_engine = create_engine(
        url,
        echo=echo,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool if in_memory else None,
    )

    @event.listens_for(db_engine, "connect")
    def _sqlite_pragmas(dbapi_connection: Any, connection_record: Any) -> None:
        # WAL lets the CLI sweep read while the API writes.
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    return db_engine


DATABASE_URL = get_database_url()
engine = create_db_engine(
    DATABASE_URL, echo=os.environ.get("SQL_ECHO", "").lower() == "true"
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """Request-scoped session for FastAPI's Depends().

    Services commit their own units of work; the session is only closed
    here.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """Session for the CLI: commit on success, roll back on error."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(bind: Engine | None = None) -> None:
    """Create missing tables. Existing tables are left untouched."""
    Base.metadata.create_all(bind=bind or engine)


def check_database(bind: Engine | None = None) -> None:
    """Round-trip a trivial query; raises if the database is unreachable."""
    with (bind or engine).connect() as conn:
        conn.execute(text("SELECT 1"))


def close_db() -> None:
    """Dispose of the connection pool."""
    engine.dispose()
    logger.info("Database engine disposed url=%s", DATABASE_URL.split("@")[-1])
