"""FastAPI routes for station SLA tracking."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from src.api.dependencies import get_tenant_id
from src.api.schemas import StationMetricResponse, StationSummaryResponse, SweepResponse
from src.db.connection import get_db
from src.db.models import Station
from src.services.sla_tracker import StationSlaTracker

router = APIRouter(prefix="/stations", tags=["stations"])


def get_sla_tracker(db: Session = Depends(get_db)) -> StationSlaTracker:
    """Dependency to get StationSlaTracker instance."""
    return StationSlaTracker(db)


@router.get("/metrics", response_model=list[StationMetricResponse])
def get_station_metrics(
    station: Station | None = Query(None, description="Filter by station"),
    breached_only: bool = Query(False, description="Only rows past their SLA"),
    include_closed: bool = Query(False, description="Include exited rows"),
    tenant_id: str = Depends(get_tenant_id),
    tracker: StationSlaTracker = Depends(get_sla_tracker),
) -> list[StationMetricResponse]:
    """Open station rows with elapsed minutes and breach computed now."""
    views = tracker.get_station_metrics(
        tenant_id,
        station=station.value if station else None,
        breached_only=breached_only,
        include_closed=include_closed,
    )
    return [StationMetricResponse.model_validate(v) for v in views]


@router.get("/summary", response_model=list[StationSummaryResponse])
def get_station_summary(
    tenant_id: str = Depends(get_tenant_id),
    tracker: StationSlaTracker = Depends(get_sla_tracker),
) -> list[StationSummaryResponse]:
    """Queue size, breach count and average wait per station."""
    return [StationSummaryResponse.model_validate(s) for s in tracker.summarize(tenant_id)]


@router.post("/sweep", response_model=SweepResponse)
def sweep_breaches(
    tenant_id: str = Depends(get_tenant_id),
    tracker: StationSlaTracker = Depends(get_sla_tracker),
) -> SweepResponse:
    """Alert once on every open row that has breached its SLA."""
    alerted = tracker.sweep_breaches(tenant_id)
    return SweepResponse(
        alerted=len(alerted),
        rows=[StationMetricResponse.model_validate(v) for v in alerted],
    )
