"""FastAPI route modules.

Exports all route modules for inclusion in the main application.
"""

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

__all__ = [
    "audit",
    "couriers",
    "dead_letters",
    "events",
    "ingestion",
    "mappings",
    "orders",
    "shipments",
    "stations",
]
