"""Station SLA tracking.

Each order has at most one open OrderStationMetrics row: the station it
currently sits in. Breach is a pure predicate evaluated on read, so no
background timer is needed for correctness. sweep_breaches() is an
optional periodic pass that writes one audit alert per newly breached
open row.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.orm import Session

from src.db.models import (
    AuditEventType,
    LogLevel,
    OrderStationMetrics,
    Station,
    parse_iso,
    to_iso,
)
from src.services.audit_service import AuditService
from src.services.idempotency import WORKFLOW_SLA_SWEEP
from src.services.station_routing import sla_target_for_station

logger = logging.getLogger(__name__)


def minutes_between(start: datetime, end: datetime) -> float:
    """Elapsed minutes from start to end (negative if end is earlier)."""
    return (end - start).total_seconds() / 60.0


def is_sla_breached(
    entered_at: datetime, sla_target_minutes: int, now: datetime | None = None
) -> bool:
    """Return True when the dwell time strictly exceeds the target.

    Example:
        entered 120 minutes ago with a 60 minute target -> True
        entered 30 minutes ago with a 60 minute target -> False
    """
    now = now or datetime.now(UTC)
    return minutes_between(entered_at, now) > sla_target_minutes


@dataclass
class StationMetricView:
    """Read model for one station dwell row with breach computed on read."""

    id: str
    order_id: str
    station: str
    entered_at: str
    exited_at: str | None
    sla_target_minutes: int
    elapsed_minutes: float
    remaining_minutes: float
    breached: bool
    breach_alerted_at: str | None = None

    @property
    def is_open(self) -> bool:
        return self.exited_at is None


@dataclass
class StationSummary:
    """Per-station queue summary."""

    station: str
    open_count: int
    breached_count: int
    avg_wait_minutes: float
    sla_target_minutes: int


def _view(row: OrderStationMetrics, now: datetime) -> StationMetricView:
    entered = parse_iso(row.entered_at)
    if row.exited_at is not None:
        elapsed = (
            row.duration_minutes
            if row.duration_minutes is not None
            else minutes_between(entered, parse_iso(row.exited_at))
        )
        breached = bool(row.sla_breached)
    else:
        elapsed = minutes_between(entered, now)
        breached = is_sla_breached(entered, row.sla_target_minutes, now)
    return StationMetricView(
        id=row.id,
        order_id=row.order_id,
        station=row.station,
        entered_at=row.entered_at,
        exited_at=row.exited_at,
        sla_target_minutes=row.sla_target_minutes,
        elapsed_minutes=round(elapsed, 1),
        remaining_minutes=round(max(0.0, row.sla_target_minutes - elapsed), 1),
        breached=breached,
        breach_alerted_at=row.breach_alerted_at,
    )


class StationSlaTracker:
    """Records station entry/exit and evaluates SLA deadlines.

    enter_station() and exit_open_stations() only stage changes in the
    session; the caller commits them together with the transition that
    triggered them.

    Attributes:
        db: SQLAlchemy session for database operations.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def get_open_row(self, tenant_id: str, order_id: str) -> OrderStationMetrics | None:
        """Return the order's open station row, if any."""
        return (
            self.db.query(OrderStationMetrics)
            .filter(
                OrderStationMetrics.tenant_id == tenant_id,
                OrderStationMetrics.order_id == order_id,
                OrderStationMetrics.exited_at.is_(None),
            )
            .first()
        )

    def exit_open_stations(
        self, tenant_id: str, order_id: str, now: datetime
    ) -> list[OrderStationMetrics]:
        """Close every open row for the order, recording duration and breach."""
        closed = (
            self.db.query(OrderStationMetrics)
            .filter(
                OrderStationMetrics.tenant_id == tenant_id,
                OrderStationMetrics.order_id == order_id,
                OrderStationMetrics.exited_at.is_(None),
            )
            .all()
        )
        for row in closed:
            duration = minutes_between(parse_iso(row.entered_at), now)
            row.exited_at = to_iso(now)
            row.duration_minutes = round(duration, 2)
            row.sla_breached = duration > row.sla_target_minutes
        return closed

    def enter_station(
        self, tenant_id: str, order_id: str, station: Station, now: datetime
    ) -> OrderStationMetrics:
        """Open a dwell row for the station with its fixed SLA target."""
        row = OrderStationMetrics(
            tenant_id=tenant_id,
            order_id=order_id,
            station=station.value,
            entered_at=to_iso(now),
            sla_target_minutes=sla_target_for_station(station),
        )
        self.db.add(row)
        return row

    def get_station_metrics(
        self,
        tenant_id: str,
        station: str | None = None,
        breached_only: bool = False,
        include_closed: bool = False,
        order_id: str | None = None,
        now: datetime | None = None,
    ) -> list[StationMetricView]:
        """List dwell rows with elapsed time and breach computed against now.

        Open rows only by default, oldest entry first.
        """
        now = now or datetime.now(UTC)
        query = self.db.query(OrderStationMetrics).filter(
            OrderStationMetrics.tenant_id == tenant_id
        )
        if station is not None:
            query = query.filter(OrderStationMetrics.station == Station(station).value)
        if order_id is not None:
            query = query.filter(OrderStationMetrics.order_id == order_id)
        if not include_closed:
            query = query.filter(OrderStationMetrics.exited_at.is_(None))

        views = [
            _view(row, now)
            for row in query.order_by(OrderStationMetrics.entered_at.asc()).all()
        ]
        if breached_only:
            views = [view for view in views if view.breached]
        return views

    def summarize(
        self, tenant_id: str, now: datetime | None = None
    ) -> list[StationSummary]:
        """Open-queue size, breach count and average wait for every station."""
        now = now or datetime.now(UTC)
        by_station: dict[str, list[StationMetricView]] = defaultdict(list)
        for view in self.get_station_metrics(tenant_id, now=now):
            by_station[view.station].append(view)

        summaries = []
        for station in Station:
            views = by_station.get(station.value, [])
            avg_wait = (
                sum(view.elapsed_minutes for view in views) / len(views) if views else 0.0
            )
            summaries.append(
                StationSummary(
                    station=station.value,
                    open_count=len(views),
                    breached_count=sum(1 for view in views if view.breached),
                    avg_wait_minutes=round(avg_wait, 1),
                    sla_target_minutes=sla_target_for_station(station),
                )
            )
        return summaries

    def sweep_breaches(
        self, tenant_id: str, now: datetime | None = None
    ) -> list[StationMetricView]:
        """Alert once on each open row that has breached since the last sweep.

        Returns:
            The rows alerted by this sweep.
        """
        now = now or datetime.now(UTC)
        audit = AuditService(self.db)
        rows = (
            self.db.query(OrderStationMetrics)
            .filter(
                OrderStationMetrics.tenant_id == tenant_id,
                OrderStationMetrics.exited_at.is_(None),
                OrderStationMetrics.breach_alerted_at.is_(None),
            )
            .all()
        )

        alerted: list[StationMetricView] = []
        for row in rows:
            view = _view(row, now)
            if not view.breached:
                continue
            row.breach_alerted_at = to_iso(now)
            audit.log(
                tenant_id=tenant_id,
                event_type=AuditEventType.sla_breached,
                entity_type="order",
                entity_id=row.order_id,
                action="alerted",
                workflow_name=WORKFLOW_SLA_SWEEP,
                new_value={
                    "station": row.station,
                    "entered_at": row.entered_at,
                    "elapsed_minutes": view.elapsed_minutes,
                    "sla_target_minutes": row.sla_target_minutes,
                },
                level=LogLevel.WARNING,
            )
            view.breach_alerted_at = row.breach_alerted_at
            alerted.append(view)

        self.db.commit()
        logger.info(
            "sla_sweep tenant=%s open_unalerted=%d alerted=%d",
            tenant_id,
            len(rows),
            len(alerted),
        )
        return alerted
