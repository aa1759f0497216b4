"""HTTP surface of the fulfillment tracker.

Carrier webhooks and operator tools talk to the routers mounted under
/api/v1. /health and /readyz stay outside the API-key gate so load
balancers can probe them.
"""

import logging
import os
import sys
import time
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as package_version

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.api.middleware.auth import maybe_require_api_key, validate_api_key_strength
from src.api.routes import (
    audit,
    couriers,
    dead_letters,
    events,
    ingestion,
    mappings,
    orders,
    shipments,
    stations,
)
from src.cli.config import get_config
from src.db.connection import check_database, close_db, init_db
from src.errors import DomainError, FulfillmentError

logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s:%(name)s:%(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logging.getLogger("src").setLevel(logging.INFO)
logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"
API_TITLE = "Fulfillment Tracking API"
_ROUTERS = (
    ingestion,
    shipments,
    orders,
    stations,
    couriers,
    mappings,
    events,
    dead_letters,
    audit,
)

_started_at: float | None = None


def _uptime_seconds() -> int:
    return int(time.monotonic() - _started_at) if _started_at is not None else 0


def _app_version() -> str:
    try:
        return package_version("fulfillment-tracker")
    except PackageNotFoundError:
        return "unknown"


def _cors_origins() -> list[str]:
    """ALLOWED_ORIGINS, comma-separated. Empty keeps the API same-origin."""
    raw = os.environ.get("ALLOWED_ORIGINS", "")
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _started_at

    validate_api_key_strength()
    config = get_config(config_path=os.environ.get("FULFILLMENT_CONFIG_PATH"))
    config.apply_runtime_env()
    app.state.config = config
    init_db()
    _started_at = time.monotonic()
    logger.info(
        "api_started default_provider=%s cache_ttl=%ss",
        config.ingestion.default_provider,
        config.mapping_cache.ttl_seconds,
    )
    try:
        yield
    finally:
        close_db()


app = FastAPI(
    title=API_TITLE,
    description="Multi-tenant shipment ingestion, order state and SLA tracking",
    version=_app_version(),
    lifespan=lifespan,
)
app.middleware("http")(maybe_require_api_key)

if origins := _cors_origins():
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-API-Key", "X-Tenant-ID"],
    )

for module in _ROUTERS:
    app.include_router(module.router, prefix=API_PREFIX)


@app.exception_handler(FulfillmentError)
async def fulfillment_error_handler(request: Request, exc: FulfillmentError) -> JSONResponse:
    body = exc.to_dict()
    body.pop("is_retryable")
    body["details"] = body["details"] or None
    return JSONResponse(status_code=400, content=body)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    """Map typed domain exceptions to their HTTP status codes."""
    content = {"error": type(exc).__name__, "detail": str(exc)}
    if exc.error_code:
        content["error_code"] = exc.error_code
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    """Unknown enum values and similar input errors from the service layer."""
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.get("/health")
def health_check() -> dict:
    return {"status": "healthy", "version": _app_version(), "uptime_seconds": _uptime_seconds()}


@app.get("/readyz")
def readiness_check():
    """503 until the database answers a trivial query."""
    try:
        check_database()
    except Exception as exc:
        logger.warning("readiness_failed error=%s", exc)
        return JSONResponse(
            status_code=503,
            content={
                "status": "not_ready",
                "uptime_seconds": _uptime_seconds(),
                "checks": {"database": {"status": "error", "message": str(exc)}},
            },
        )
    return {
        "status": "ready",
        "uptime_seconds": _uptime_seconds(),
        "checks": {"database": {"status": "ok"}},
    }


@app.get("/api")
def api_root() -> dict:
    return {"name": API_TITLE, "version": _app_version(), "prefix": API_PREFIX, "docs": "/docs"}
