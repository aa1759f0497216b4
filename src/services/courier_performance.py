"""Daily per-courier performance analytics.

Aggregates shipments created in a trailing window into one bucket per
(tenant, courier, date, region) and upserts CourierPerformanceDaily.
Recomputing a day overwrites its rows, so the computation is naturally
idempotent and needs no execution ledger.
"""

import json
import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta
from typing import Any

from sqlalchemy.orm import Session

from src.db.models import (
    AuditEventType,
    CourierPerformanceDaily,
    InternalOrderState,
    Shipment,
    parse_iso,
    to_iso,
    utc_now_iso,
)
from src.services.audit_service import AuditService
from src.services.idempotency import WORKFLOW_COURIER_PERFORMANCE

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 30
DEFAULT_ON_TIME_HOURS = 72.0
ALL_REGIONS = "all"

_S = InternalOrderState
DELIVERED_STATES = frozenset(
    {_S.delivered.value, _S.finance_pending.value, _S.finance_settled.value}
)
RETURNED_STATES = frozenset({_S.return_in_transit.value, _S.return_received.value})


def delivery_rate(total_shipments: int, delivered_count: int) -> float:
    """Delivered share of shipments; 0.0 when there are no shipments."""
    if total_shipments <= 0:
        return 0.0
    return min(1.0, max(0.0, delivered_count / total_shipments))


def return_rate(total_shipments: int, returned_count: int) -> float:
    """Returned share of shipments; 0.0 when there are no shipments."""
    if total_shipments <= 0:
        return 0.0
    return min(1.0, max(0.0, returned_count / total_shipments))


def composite_score(
    delivery_rate: float,
    return_rate: float,
    on_time_rate: float,
    avg_pickup_hours: float,
) -> int:
    """Courier score in [0, 100].

    Starts at 50; +20 x delivery rate, -15 x return rate, +15 x on-time
    rate, -10 x min(pickup hours / 24, 1). Clamped, then rounded half up.
    """
    score = 50.0
    score += 20 * delivery_rate
    score -= 15 * return_rate
    score += 15 * on_time_rate
    score -= 10 * min(max(avg_pickup_hours, 0.0) / 24, 1.0)
    score = max(0.0, min(100.0, score))
    return int(math.floor(score + 0.5))


def build_recommendations(
    delivery_rate: float,
    return_rate: float,
    avg_pickup_hours: float,
    avg_cod_remittance_hours: float,
) -> list[str]:
    """Operator guidance derived from a courier's metrics."""
    recommendations = []
    if delivery_rate > 0.9 and return_rate < 0.1:
        recommendations.append("Excellent performance - consider as primary carrier")
    elif return_rate > 0.2:
        recommendations.append("High return rate - investigate delivery quality")
    if avg_pickup_hours > 24:
        recommendations.append("Slow pickup times - consider for non-urgent orders only")
    if avg_cod_remittance_hours > 168:
        recommendations.append("Slow COD remittance - monitor cash flow impact")
    return recommendations


def _hours(start: str | None, end: str | None) -> float | None:
    if not start or not end:
        return None
    return (parse_iso(end) - parse_iso(start)).total_seconds() / 3600.0


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


@dataclass
class _Bucket:
    total: int = 0
    delivered: int = 0
    returned: int = 0
    pickup_hours: list[float] = field(default_factory=list)
    delivery_hours: list[float] = field(default_factory=list)
    return_hours: list[float] = field(default_factory=list)
    cod_hours: list[float] = field(default_factory=list)

    def add(self, shipment: Shipment) -> None:
        self.total += 1
        is_delivered = (
            shipment.internal_status in DELIVERED_STATES or shipment.delivered_at is not None
        )
        is_returned = (
            shipment.internal_status in RETURNED_STATES or shipment.returned_at is not None
        )
        if is_delivered and not is_returned:
            self.delivered += 1
        if is_returned:
            self.returned += 1

        for values, end in (
            (self.pickup_hours, shipment.picked_up_at),
            (self.delivery_hours, shipment.delivered_at),
            (self.return_hours, shipment.returned_at),
            (self.cod_hours, shipment.cod_remitted_at),
        ):
            hours = _hours(shipment.created_at, end)
            if hours is not None and hours >= 0:
                values.append(hours)


@dataclass
class CourierSummary:
    """Computed metrics for one bucket, as written to the table."""

    courier: str
    region: str
    total_shipments: int
    delivered_count: int
    returned_count: int
    delivery_rate: float
    return_rate: float
    on_time_rate: float
    avg_pickup_hours: float
    avg_delivery_hours: float
    avg_return_cycle_hours: float
    avg_cod_remittance_hours: float
    score: int
    recommendations: list[str]


def summarize_bucket(
    courier: str, region: str, bucket: _Bucket, on_time_hours: float
) -> CourierSummary:
    d_rate = delivery_rate(bucket.total, bucket.delivered)
    r_rate = return_rate(bucket.total, bucket.returned)
    on_time = sum(1 for h in bucket.delivery_hours if h <= on_time_hours)
    on_time_rate = on_time / len(bucket.delivery_hours) if bucket.delivery_hours else 0.0
    avg_pickup = _mean(bucket.pickup_hours)
    avg_cod = _mean(bucket.cod_hours)
    return CourierSummary(
        courier=courier,
        region=region,
        total_shipments=bucket.total,
        delivered_count=bucket.delivered,
        returned_count=bucket.returned,
        delivery_rate=round(d_rate, 3),
        return_rate=round(r_rate, 3),
        on_time_rate=round(on_time_rate, 3),
        avg_pickup_hours=round(avg_pickup, 1),
        avg_delivery_hours=round(_mean(bucket.delivery_hours), 1),
        avg_return_cycle_hours=round(_mean(bucket.return_hours), 1),
        avg_cod_remittance_hours=round(avg_cod, 1),
        score=composite_score(d_rate, r_rate, on_time_rate, avg_pickup),
        recommendations=build_recommendations(d_rate, r_rate, avg_pickup, avg_cod),
    )


@dataclass
class CourierRanking:
    """One courier's place in a routing recommendation."""

    rank: int
    courier: str
    region: str
    date: str
    score: int
    total_shipments: int
    delivery_rate: float
    return_rate: float
    on_time_rate: float
    recommendations: list[str]


class CourierPerformanceService:
    """Computes and queries CourierPerformanceDaily rows.

    Attributes:
        db: SQLAlchemy session for database operations.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def compute_daily(
        self,
        tenant_id: str,
        report_date: date | None = None,
        window_days: int = DEFAULT_WINDOW_DAYS,
        on_time_hours: float = DEFAULT_ON_TIME_HOURS,
    ) -> list[CourierSummary]:
        """Aggregate the trailing window ending on report_date and upsert rows.

        Returns:
            One summary per (courier, region) bucket.
        """
        report_date = report_date or datetime.now(UTC).date()
        window_end = datetime.combine(report_date + timedelta(days=1), time.min, UTC)
        window_start = window_end - timedelta(days=window_days)

        shipments = (
            self.db.query(Shipment)
            .filter(
                Shipment.tenant_id == tenant_id,
                Shipment.created_at >= to_iso(window_start),
                Shipment.created_at < to_iso(window_end),
            )
            .all()
        )

        buckets: dict[tuple[str, str], _Bucket] = defaultdict(_Bucket)
        for shipment in shipments:
            region = shipment.region or ALL_REGIONS
            buckets[(shipment.courier, region)].add(shipment)

        summaries = [
            summarize_bucket(courier, region, bucket, on_time_hours)
            for (courier, region), bucket in sorted(buckets.items())
        ]
        day = report_date.isoformat()
        for summary in summaries:
            self._upsert(tenant_id, day, summary)

        AuditService(self.db).log(
            tenant_id=tenant_id,
            event_type=AuditEventType.courier_performance,
            entity_type="courier_performance",
            entity_id=day,
            action="computed",
            workflow_name=WORKFLOW_COURIER_PERFORMANCE,
            new_value={
                "window_days": window_days,
                "shipments": len(shipments),
                "buckets": len(summaries),
            },
        )
        self.db.commit()
        logger.info(
            "courier_performance_computed tenant=%s date=%s shipments=%d buckets=%d",
            tenant_id,
            day,
            len(shipments),
            len(summaries),
        )
        return summaries

    def _upsert(self, tenant_id: str, day: str, summary: CourierSummary) -> None:
        row = (
            self.db.query(CourierPerformanceDaily)
            .filter(
                CourierPerformanceDaily.tenant_id == tenant_id,
                CourierPerformanceDaily.courier == summary.courier,
                CourierPerformanceDaily.date == day,
                CourierPerformanceDaily.region == summary.region,
            )
            .first()
        )
        if row is None:
            row = CourierPerformanceDaily(
                tenant_id=tenant_id,
                courier=summary.courier,
                date=day,
                region=summary.region,
            )
            self.db.add(row)

        row.total_shipments = summary.total_shipments
        row.delivered_count = summary.delivered_count
        row.returned_count = summary.returned_count
        row.avg_pickup_hours = summary.avg_pickup_hours
        row.avg_delivery_hours = summary.avg_delivery_hours
        row.avg_return_cycle_hours = summary.avg_return_cycle_hours
        row.avg_cod_remittance_hours = summary.avg_cod_remittance_hours
        row.delivery_rate = summary.delivery_rate
        row.return_rate = summary.return_rate
        row.on_time_rate = summary.on_time_rate
        row.score = summary.score
        row.recommendations = json.dumps(summary.recommendations)
        row.computed_at = utc_now_iso()

    def get_courier_performance(
        self,
        tenant_id: str,
        courier: str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        region: str | None = None,
    ) -> list[CourierPerformanceDaily]:
        """Query stored daily rows, newest date first, best score first."""
        query = self.db.query(CourierPerformanceDaily).filter(
            CourierPerformanceDaily.tenant_id == tenant_id
        )
        if courier is not None:
            query = query.filter(CourierPerformanceDaily.courier == courier.lower())
        if region is not None:
            query = query.filter(CourierPerformanceDaily.region == region)
        if date_from is not None:
            query = query.filter(CourierPerformanceDaily.date >= date_from.isoformat())
        if date_to is not None:
            query = query.filter(CourierPerformanceDaily.date <= date_to.isoformat())
        return query.order_by(
            CourierPerformanceDaily.date.desc(), CourierPerformanceDaily.score.desc()
        ).all()

    def recommend_courier(
        self,
        tenant_id: str,
        region: str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[CourierRanking]:
        """Rank couriers for a region from their stored daily rows.

        Each daily row already covers a trailing window, so only the latest
        row per (courier, region) in the date range is used. Ties on score
        go to the courier with more shipments. Without a region every
        (courier, region) pair is ranked.
        """
        latest: dict[tuple[str, str], CourierPerformanceDaily] = {}
        for row in self.get_courier_performance(
            tenant_id, date_from=date_from, date_to=date_to, region=region
        ):
            latest.setdefault((row.courier, row.region), row)

        ordered = sorted(
            latest.values(), key=lambda r: (-r.score, -r.total_shipments, r.courier, r.region)
        )
        return [
            CourierRanking(
                rank=rank,
                courier=row.courier,
                region=row.region,
                date=row.date,
                score=row.score,
                total_shipments=row.total_shipments,
                delivery_rate=row.delivery_rate,
                return_rate=row.return_rate,
                on_time_rate=row.on_time_rate,
                recommendations=recommendations_of(row),
            )
            for rank, row in enumerate(ordered, start=1)
        ]


def recommendations_of(row: CourierPerformanceDaily) -> list[str]:
    """Decode the stored recommendations list."""
    if not row.recommendations:
        return []
    try:
        decoded: Any = json.loads(row.recommendations)
    except ValueError:
        return []
    return [str(item) for item in decoded] if isinstance(decoded, list) else []
