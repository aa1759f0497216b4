"""Service layer for the fulfillment tracker.

Provides ingestion, status mapping, order state transitions, station
SLA tracking, courier analytics and audit logging.
"""

from src.services.audit_service import AuditService, redact_sensitive
from src.services.courier_performance import CourierPerformanceService
from src.services.ingestion import IngestionService, IngestResult
from src.services.order_state import OrderStateMachine, TransitionResult
from src.services.shipment_service import ShipmentService
from src.services.sla_tracker import StationSlaTracker
from src.services.status_mapping import StatusMappingService, StatusRule

__all__ = [
    "AuditService",
    "redact_sensitive",
    "CourierPerformanceService",
    "IngestionService",
    "IngestResult",
    "OrderStateMachine",
    "TransitionResult",
    "ShipmentService",
    "StationSlaTracker",
    "StatusMappingService",
    "StatusRule",
]
