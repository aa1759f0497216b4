"""FastAPI routes for audit log viewing and export."""

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from src.api.dependencies import get_tenant_id
from src.api.schemas import AuditLogResponse
from src.db.connection import get_db
from src.db.models import AuditEventType, LogLevel
from src.services.audit_service import AuditService

router = APIRouter(prefix="/audit-logs", tags=["audit"])


def get_audit_service(db: Session = Depends(get_db)) -> AuditService:
    """Dependency to get AuditService instance."""
    return AuditService(db)


@router.get("", response_model=list[AuditLogResponse])
def get_audit_logs(
    entity_type: str | None = Query(None, description="Filter by entity type"),
    entity_id: str | None = Query(None, description="Filter by entity id"),
    event_type: AuditEventType | None = Query(None, description="Filter by event type"),
    level: LogLevel | None = Query(None, description="Filter by log level"),
    limit: int = Query(1000, ge=1, le=10000),
    tenant_id: str = Depends(get_tenant_id),
    audit_svc: AuditService = Depends(get_audit_service),
) -> list[AuditLogResponse]:
    """Audit records for the tenant, oldest first."""
    logs = audit_svc.get_logs(
        tenant_id,
        entity_type=entity_type,
        entity_id=entity_id,
        event_type=event_type,
        level=level,
        limit=limit,
    )
    return [AuditLogResponse.model_validate(entry) for entry in logs]


@router.get("/export", response_class=PlainTextResponse)
def export_audit_logs(
    label: str = Query("audit", description="Download filename label"),
    tenant_id: str = Depends(get_tenant_id),
    audit_svc: AuditService = Depends(get_audit_service),
) -> PlainTextResponse:
    """Download the tenant's audit trail as plain text."""
    filename, content = audit_svc.export_logs_for_download(tenant_id, label)
    return PlainTextResponse(
        content=content,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/{audit_log_id}", response_model=AuditLogResponse)
def get_audit_log(
    audit_log_id: str,
    tenant_id: str = Depends(get_tenant_id),
    audit_svc: AuditService = Depends(get_audit_service),
) -> AuditLogResponse:
    """Fetch one audit record, e.g. the auditLogId of a failed ingestion."""
    entry = audit_svc.get_log(tenant_id, audit_log_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="Audit log not found")
    return AuditLogResponse.model_validate(entry)
