"""FastAPI routes for event ingestion.

One endpoint per channel. Handlers never raise on bad carrier data:
the pipeline returns a structured result, dead-letters failures and
reports them as success=false with an audit log id.
"""

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError as PydanticValidationError

from src.api.dependencies import get_ingestion_service, get_tenant_id
from src.api.schemas import (
    CsvIngestRequest,
    CsvIngestResponse,
    EmailIngestRequest,
    IngestResponse,
    ManualIngestRequest,
)
from src.errors import ValidationError
from src.services.ingestion import IngestionService, IngestResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ingest", tags=["ingestion"])


def _response(result: IngestResult) -> IngestResponse:
    return IngestResponse(**result.to_dict())


@router.post("/api", response_model=IngestResponse)
def ingest_api_event(
    body: Any = Body(..., description="Carrier webhook body"),
    tenant_id: str = Depends(get_tenant_id),
    service: IngestionService = Depends(get_ingestion_service),
) -> IngestResponse:
    """Ingest a carrier webhook (single event or {events: [...]} batch)."""
    return _response(service.submit_api_event(tenant_id, body))


@router.post("/csv", response_model=CsvIngestResponse)
async def ingest_csv_batch(
    request: Request,
    provider: str | None = Query(None, description="Carrier code for all rows"),
    tenant_id: str = Depends(get_tenant_id),
    service: IngestionService = Depends(get_ingestion_service),
) -> CsvIngestResponse:
    """Ingest a CSV export.

    Accepts either a raw text/csv body or JSON {"csv": ..., "provider": ...}.
    Each row is an independent idempotent unit.
    """
    raw = await request.body()
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            payload = CsvIngestRequest.model_validate_json(raw)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid CSV ingest payload: {e.errors()[0]['msg']}") from e
        csv_text = payload.csv
        provider = payload.provider or provider
    else:
        csv_text = raw.decode("utf-8-sig", errors="replace")

    results = await run_in_threadpool(
        service.submit_csv_batch, tenant_id, csv_text, provider
    )
    return CsvIngestResponse(
        total=len(results),
        succeeded=sum(1 for r in results if r.success and not r.skipped),
        skipped=sum(1 for r in results if r.skipped),
        failed=sum(1 for r in results if not r.success),
        results=[_response(r) for r in results],
    )


@router.post("/email", response_model=IngestResponse)
def ingest_email_event(
    payload: EmailIngestRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: IngestionService = Depends(get_ingestion_service),
) -> IngestResponse:
    """Ingest a carrier notification email."""
    return _response(
        service.submit_email_event(tenant_id, payload.body, provider=payload.provider)
    )


@router.post("/manual", response_model=IngestResponse)
def ingest_manual_event(
    payload: ManualIngestRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: IngestionService = Depends(get_ingestion_service),
) -> IngestResponse:
    """Ingest an operator-entered status update."""
    entry = payload.model_dump(mode="json", exclude_none=True)
    return _response(service.submit_manual_event(tenant_id, entry))
