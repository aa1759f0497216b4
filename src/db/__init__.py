"""Database module for fulfillment state management and persistence."""

from src.db.connection import (
    SessionLocal,
    check_database,
    close_db,
    create_db_engine,
    engine,
    get_db,
    get_db_context,
    init_db,
)
from src.db.models import (
    AuditEventType,
    AuditLog,
    CourierPerformanceDaily,
    DeadLetter,
    DeadLetterStatus,
    IngestionMode,
    InternalOrderState,
    LogLevel,
    OrderInternalEvent,
    OrderState,
    OrderStationMetrics,
    ProviderStatusMapping,
    Shipment,
    ShipmentEvent,
    Station,
    TriggeredBy,
    WorkflowExecution,
)

__all__ = [
    # Models
    "Shipment",
    "ShipmentEvent",
    "ProviderStatusMapping",
    "OrderInternalEvent",
    "OrderState",
    "OrderStationMetrics",
    "CourierPerformanceDaily",
    "WorkflowExecution",
    "AuditLog",
    "DeadLetter",
    # Enums
    "InternalOrderState",
    "Station",
    "IngestionMode",
    "TriggeredBy",
    "LogLevel",
    "AuditEventType",
    "DeadLetterStatus",
    # Connection
    "engine",
    "SessionLocal",
    "get_db",
    "get_db_context",
    "init_db",
    "create_db_engine",
    "check_database",
    "close_db",
]
