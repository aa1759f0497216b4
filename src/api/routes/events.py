"""FastAPI routes for triage work queues and the processed-event ledger."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from src.api.dependencies import get_ingestion_service, get_tenant_id
from src.api.schemas import ShipmentEventResponse, WorkflowExecutionResponse
from src.db.connection import get_db
from src.services.idempotency import get_execution_history
from src.services.ingestion import IngestionService

router = APIRouter(prefix="/events", tags=["events"])


@router.get("/unresolved", response_model=list[ShipmentEventResponse])
def list_unresolved_events(
    limit: int = Query(100, ge=1, le=1000),
    tenant_id: str = Depends(get_tenant_id),
    service: IngestionService = Depends(get_ingestion_service),
) -> list[ShipmentEventResponse]:
    """Events with an unknown tracking number or an unmapped status."""
    return [
        ShipmentEventResponse.model_validate(e)
        for e in service.list_unresolved_events(tenant_id, limit=limit)
    ]


@router.get("/anomalies", response_model=list[ShipmentEventResponse])
def list_anomalies(
    limit: int = Query(100, ge=1, le=1000),
    tenant_id: str = Depends(get_tenant_id),
    service: IngestionService = Depends(get_ingestion_service),
) -> list[ShipmentEventResponse]:
    """Events rejected as terminal-state regressions."""
    return [
        ShipmentEventResponse.model_validate(e)
        for e in service.list_anomalies(tenant_id, limit=limit)
    ]


@router.get("/executions", response_model=list[WorkflowExecutionResponse])
def list_executions(
    workflow_name: str | None = Query(None, description="e.g. shipment-status-ingest"),
    limit: int = Query(50, ge=1, le=1000),
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> list[WorkflowExecutionResponse]:
    """Idempotency ledger: logical events already processed, newest first."""
    return [
        WorkflowExecutionResponse.model_validate(e)
        for e in get_execution_history(db, tenant_id, workflow_name=workflow_name, limit=limit)
    ]
