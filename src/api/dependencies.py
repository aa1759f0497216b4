"""Shared FastAPI dependencies.

Every tenant-scoped route depends on get_tenant_id(); requests without
an X-Tenant-ID header are rejected with E-5001 before any work is done.
"""

import re

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from src.cli.config import FulfillmentConfig
from src.db.connection import get_db
from src.errors import FulfillmentError
from src.services.ingestion import IngestionService

_TENANT_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]{0,63}$")


def get_tenant_id(x_tenant_id: str | None = Header(None)) -> str:
    """Return the caller's tenant from the X-Tenant-ID header.

    Raises:
        FulfillmentError: E-5001 when the header is missing, blank, or
            not a usable identifier ("*" is reserved for global rows).
    """
    tenant = (x_tenant_id or "").strip()
    if not tenant or not _TENANT_PATTERN.match(tenant):
        raise FulfillmentError.from_code("E-5001")
    return tenant


def get_app_config(request: Request) -> FulfillmentConfig:
    """Config loaded at startup, or defaults when none was loaded."""
    config = getattr(request.app.state, "config", None)
    return config if config is not None else FulfillmentConfig()


def get_ingestion_service(
    db: Session = Depends(get_db),
    config: FulfillmentConfig = Depends(get_app_config),
) -> IngestionService:
    """Dependency to get an IngestionService configured from app config."""
    return IngestionService(
        db,
        default_provider=config.ingestion.default_provider,
        email_excerpt_chars=config.ingestion.email_excerpt_chars,
    )
