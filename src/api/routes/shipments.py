"""FastAPI routes for the shipment registry.

Registering a tracking number attaches any events that arrived before
the shipment was known and applies them to the order.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from src.api.dependencies import get_ingestion_service, get_tenant_id
from src.api.schemas import (
    ShipmentCreate,
    ShipmentCreateResponse,
    ShipmentEventResponse,
    ShipmentResponse,
    TransitionResponse,
)
from src.db.connection import get_db
from src.db.models import ShipmentEvent
from src.errors import NotFoundError
from src.services.ingestion import IngestionService
from src.services.shipment_service import ShipmentService

router = APIRouter(prefix="/shipments", tags=["shipments"])


def get_shipment_service(db: Session = Depends(get_db)) -> ShipmentService:
    """Dependency to get ShipmentService instance."""
    return ShipmentService(db)


@router.post(
    "", response_model=ShipmentCreateResponse, status_code=status.HTTP_201_CREATED
)
def register_shipment(
    payload: ShipmentCreate,
    tenant_id: str = Depends(get_tenant_id),
    shipments: ShipmentService = Depends(get_shipment_service),
    ingestion: IngestionService = Depends(get_ingestion_service),
) -> ShipmentCreateResponse:
    """Register a tracking number against an order.

    Raises:
        ConflictError: If the tracking number belongs to another order (409).
    """
    shipment = shipments.register_shipment(
        tenant_id,
        payload.order_id,
        payload.tracking_number,
        payload.courier,
        region=payload.region,
        created_at=payload.created_at,
    )
    attached = ingestion.attach_unmatched_events(tenant_id, shipment.tracking_number)
    shipments.db.refresh(shipment)
    return ShipmentCreateResponse(
        shipment=ShipmentResponse.model_validate(shipment),
        attached_events=attached,
    )


@router.get("/{tracking_number}", response_model=ShipmentResponse)
def get_shipment(
    tracking_number: str,
    tenant_id: str = Depends(get_tenant_id),
    shipments: ShipmentService = Depends(get_shipment_service),
) -> ShipmentResponse:
    """Get a shipment by tracking number."""
    shipment = shipments.get_by_tracking(tenant_id, tracking_number)
    if shipment is None:
        raise NotFoundError("Shipment", tracking_number)
    return ShipmentResponse.model_validate(shipment)


@router.get("/{tracking_number}/events", response_model=list[ShipmentEventResponse])
def get_shipment_events(
    tracking_number: str,
    tenant_id: str = Depends(get_tenant_id),
    shipments: ShipmentService = Depends(get_shipment_service),
) -> list[ShipmentEventResponse]:
    """Carrier events stored for a tracking number, oldest first."""
    events = (
        shipments.db.query(ShipmentEvent)
        .filter(
            ShipmentEvent.tenant_id == tenant_id,
            ShipmentEvent.tracking_number == tracking_number.strip().upper(),
        )
        .order_by(ShipmentEvent.occurred_at.asc())
        .all()
    )
    return [ShipmentEventResponse.model_validate(e) for e in events]


@router.post("/{tracking_number}/cod-remittance", response_model=TransitionResponse)
def record_cod_remittance(
    tracking_number: str,
    tenant_id: str = Depends(get_tenant_id),
    shipments: ShipmentService = Depends(get_shipment_service),
) -> TransitionResponse:
    """Settlement hook: record COD remittance and settle the order."""
    result = shipments.record_cod_remittance(tenant_id, tracking_number)
    return TransitionResponse(**result.to_dict())
