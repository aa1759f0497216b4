"""FastAPI routes for the dead-letter queue."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from src.api.dependencies import get_ingestion_service, get_tenant_id
from src.api.schemas import DeadLetterResponse, RetryResponse
from src.db.connection import get_db
from src.db.models import DeadLetterStatus
from src.services.dead_letter import get_dead_letters, resolve_dead_letter
from src.services.ingestion import IngestionService

router = APIRouter(prefix="/dead-letters", tags=["dead-letters"])


@router.get("", response_model=list[DeadLetterResponse])
def list_dead_letters(
    status: DeadLetterStatus | None = Query(None, description="Filter by status"),
    workflow_name: str | None = Query(None, description="Filter by workflow"),
    limit: int = Query(100, ge=1, le=1000),
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> list[DeadLetterResponse]:
    """Captured failures, newest first."""
    letters = get_dead_letters(
        db, tenant_id, status=status, workflow_name=workflow_name, limit=limit
    )
    return [DeadLetterResponse.model_validate(letter) for letter in letters]


@router.post("/retry", response_model=RetryResponse)
def retry_dead_letters(
    tenant_id: str = Depends(get_tenant_id),
    service: IngestionService = Depends(get_ingestion_service),
) -> RetryResponse:
    """Replay pending ingestion letters."""
    return RetryResponse(**service.replay_dead_letters(tenant_id))


@router.post("/{dead_letter_id}/resolve", response_model=DeadLetterResponse)
def resolve_letter(
    dead_letter_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> DeadLetterResponse:
    """Mark a letter resolved after manual intervention.

    Raises:
        NotFoundError: If the letter does not exist for this tenant (404).
    """
    return DeadLetterResponse.model_validate(
        resolve_dead_letter(db, tenant_id, dead_letter_id)
    )
