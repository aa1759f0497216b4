"""FastAPI routes for provider status mappings.

Upserting a mapping re-resolves stored events that were waiting on it.
"""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from src.api.dependencies import get_ingestion_service, get_tenant_id
from src.api.schemas import (
    StatusMappingResponse,
    StatusMappingUpsert,
    StatusMappingUpsertResponse,
)
from src.db.connection import get_db
from src.services.ingestion import IngestionService
from src.services.status_mapping import StatusMappingService

router = APIRouter(prefix="/status-mappings", tags=["status-mappings"])


def get_mapping_service(db: Session = Depends(get_db)) -> StatusMappingService:
    """Dependency to get StatusMappingService instance."""
    return StatusMappingService(db)


@router.get("", response_model=list[StatusMappingResponse])
def list_status_mappings(
    provider: str | None = Query(None, description="Filter by provider"),
    include_defaults: bool = Query(True, description="Include global and built-in rules"),
    tenant_id: str = Depends(get_tenant_id),
    service: StatusMappingService = Depends(get_mapping_service),
) -> list[StatusMappingResponse]:
    """Effective rules for the tenant in precedence order."""
    rules = service.list_mappings(
        tenant_id, provider=provider, include_defaults=include_defaults
    )
    return [StatusMappingResponse(**rule.to_dict()) for rule in rules]


@router.put("", response_model=StatusMappingUpsertResponse)
def upsert_status_mapping(
    payload: StatusMappingUpsert,
    tenant_id: str = Depends(get_tenant_id),
    service: StatusMappingService = Depends(get_mapping_service),
    ingestion: IngestionService = Depends(get_ingestion_service),
) -> StatusMappingUpsertResponse:
    """Create or update a tenant override.

    Raises:
        ValidationError: If the rule disagrees with the routing table (400).
    """
    rule = service.upsert_mapping(
        tenant_id,
        payload.provider,
        payload.provider_status,
        payload.internal_status,
        triggers_station=payload.triggers_station.value if payload.triggers_station else None,
        is_terminal=payload.is_terminal,
    )
    remapped = ingestion.remap_unresolved_events(tenant_id)
    return StatusMappingUpsertResponse(
        mapping=StatusMappingResponse(**rule.to_dict()),
        remapped_events=remapped,
    )


@router.delete("/{mapping_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_status_mapping(
    mapping_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: StatusMappingService = Depends(get_mapping_service),
) -> None:
    """Delete one of the tenant's overrides.

    Raises:
        NotFoundError: If the mapping does not exist for this tenant (404).
    """
    service.delete_mapping(tenant_id, mapping_id)
