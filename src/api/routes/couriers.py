"""FastAPI routes for courier performance analytics."""

from datetime import UTC, date, datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from src.api.dependencies import get_app_config, get_tenant_id
from src.api.schemas import (
    CourierComputeRequest,
    CourierComputeResponse,
    CourierPerformanceResponse,
    CourierRankingResponse,
)
from src.cli.config import FulfillmentConfig
from src.db.connection import get_db
from src.errors import ValidationError
from src.services.courier_performance import CourierPerformanceService

router = APIRouter(prefix="/couriers", tags=["couriers"])


def get_courier_service(db: Session = Depends(get_db)) -> CourierPerformanceService:
    """Dependency to get CourierPerformanceService instance."""
    return CourierPerformanceService(db)


@router.get("/performance", response_model=list[CourierPerformanceResponse])
def get_courier_performance(
    courier: str | None = Query(None, description="Courier code"),
    date_from: date | None = Query(None, description="Inclusive start date"),
    date_to: date | None = Query(None, description="Inclusive end date"),
    region: str | None = Query(None, description="Region, or 'all'"),
    tenant_id: str = Depends(get_tenant_id),
    service: CourierPerformanceService = Depends(get_courier_service),
) -> list[CourierPerformanceResponse]:
    """Stored daily rows, newest date first, best score first."""
    if date_from and date_to and date_from > date_to:
        raise ValidationError("date_from must not be after date_to")
    rows = service.get_courier_performance(
        tenant_id, courier=courier, date_from=date_from, date_to=date_to, region=region
    )
    return [CourierPerformanceResponse.model_validate(r) for r in rows]


@router.get("/recommendation", response_model=list[CourierRankingResponse])
def recommend_courier(
    region: str | None = Query(None, description="Region to route, or 'all'"),
    date_from: date | None = Query(None, description="Inclusive start date"),
    date_to: date | None = Query(None, description="Inclusive end date"),
    tenant_id: str = Depends(get_tenant_id),
    service: CourierPerformanceService = Depends(get_courier_service),
) -> list[CourierRankingResponse]:
    """Couriers ranked best first; the first entry is the recommendation."""
    if date_from and date_to and date_from > date_to:
        raise ValidationError("date_from must not be after date_to")
    rankings = service.recommend_courier(
        tenant_id, region=region, date_from=date_from, date_to=date_to
    )
    return [CourierRankingResponse.model_validate(r) for r in rankings]


@router.post("/performance/compute", response_model=CourierComputeResponse)
def compute_courier_performance(
    payload: CourierComputeRequest | None = None,
    tenant_id: str = Depends(get_tenant_id),
    service: CourierPerformanceService = Depends(get_courier_service),
    config: FulfillmentConfig = Depends(get_app_config),
) -> CourierComputeResponse:
    """Recompute the trailing window ending on report_date and upsert rows."""
    payload = payload or CourierComputeRequest()
    try:
        report_date = (
            date.fromisoformat(payload.report_date)
            if payload.report_date
            else datetime.now(UTC).date()
        )
    except ValueError as e:
        raise ValidationError(f"Invalid report_date: {payload.report_date}") from e
    summaries = service.compute_daily(
        tenant_id,
        report_date=report_date,
        window_days=payload.window_days or config.analytics.window_days,
        on_time_hours=config.analytics.on_time_hours,
    )
    return CourierComputeResponse(
        report_date=report_date.isoformat(),
        buckets=len(summaries),
    )
