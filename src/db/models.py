"""SQLAlchemy ORM models for the fulfillment tracking database.

This module defines the core data models for shipment events, status
mapping rules, the per-order transition log, station SLA metrics,
courier analytics, audit logging, and the dead-letter queue. Uses
SQLAlchemy 2.0 style with Mapped and mapped_column.

Every table carries a tenant_id column and every service query filters
on it. Timestamps are stored as ISO8601 UTC strings.
"""

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
)


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return datetime.now(UTC).isoformat()


def to_iso(value: datetime) -> str:
    """Serialize a datetime as a UTC ISO8601 string.

    Naive datetimes are assumed to already be in UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def parse_iso(value: str) -> datetime:
    """Parse a stored ISO8601 timestamp into an aware UTC datetime."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


# Wildcard marker for tenant_id / provider on mapping rules
WILDCARD = "*"


# Enums matching the database schema constraints


class InternalOrderState(str, Enum):
    """Canonical internal order states.

    Lifecycle: new -> call_center_* -> operations_* -> shipped -> in_transit
               -> out_for_delivery -> delivered -> finance_*
               Returns branch: return_requested -> return_in_transit -> return_received
    """

    new = "new"
    call_center_pending = "call_center_pending"
    call_center_confirmed = "call_center_confirmed"
    operations_pending = "operations_pending"
    operations_processing = "operations_processing"
    shipped = "shipped"
    in_transit = "in_transit"
    out_for_delivery = "out_for_delivery"
    delivered = "delivered"
    finance_pending = "finance_pending"
    finance_settled = "finance_settled"
    return_requested = "return_requested"
    return_in_transit = "return_in_transit"
    return_received = "return_received"
    cancelled = "cancelled"


TERMINAL_STATES = frozenset(
    {
        InternalOrderState.delivered,
        InternalOrderState.cancelled,
        InternalOrderState.return_received,
    }
)


class Station(str, Enum):
    """Operational stations an order is routed through."""

    call_center = "call_center"
    operations = "operations"
    finance = "finance"
    returns = "returns"


class IngestionMode(str, Enum):
    """Channel a shipment event arrived through."""

    api = "api"
    csv = "csv"
    email = "email"
    manual = "manual"


class TriggeredBy(str, Enum):
    """Actor categories for order transitions."""

    system = "system"
    user = "user"
    automation = "automation"


class LogLevel(str, Enum):
    """Severity levels for audit log entries."""

    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class AuditEventType(str, Enum):
    """Categories of events logged in the audit trail."""

    shipment_ingested = "shipment_ingested"
    status_unmapped = "status_unmapped"
    shipment_unmatched = "shipment_unmatched"
    state_transition = "state_transition"
    order_reopened = "order_reopened"
    anomaly = "anomaly"
    sla_breached = "sla_breached"
    courier_performance = "courier_performance"
    mapping_changed = "mapping_changed"
    workflow_failed = "workflow_failed"


class DeadLetterStatus(str, Enum):
    """Lifecycle for dead-letter records.

    Lifecycle: pending -> resolved
               pending -> exhausted (retry_count reached max_retries)
    """

    pending = "pending"
    resolved = "resolved"
    exhausted = "exhausted"


# SQLAlchemy Base


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# Models


class Shipment(Base):
    """Tracking number registered against an order and courier.

    Carrier events are matched to orders through this table. Timestamp
    columns are filled in as the ingestion pipeline observes pickup,
    delivery and return events, and feed the courier analytics.

    Attributes:
        tracking_number: Carrier tracking reference (AWB).
        courier: Carrier code, e.g. aramex, smsa, jnt.
        region: Optional delivery region used for analytics bucketing.
        internal_status: Latest mapped internal state for this shipment.
        picked_up_at: First time the carrier reported pickup.
        delivered_at: Time the carrier reported delivery.
        returned_at: Time the carrier reported the return completed.
        cod_remitted_at: Time cash-on-delivery funds were remitted.
    """

    __tablename__ = "shipments"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tracking_number: Mapped[str] = mapped_column(String(64), nullable=False)
    courier: Mapped[str] = mapped_column(String(50), nullable=False)
    region: Mapped[str | None] = mapped_column(String(100), nullable=True)
    provider_status: Mapped[str | None] = mapped_column(String(100), nullable=True)
    internal_status: Mapped[str | None] = mapped_column(String(40), nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    picked_up_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    delivered_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    returned_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    cod_remitted_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    last_event_at: Mapped[str | None] = mapped_column(String(50), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "tracking_number", name="uq_shipments_tenant_tracking"
        ),
        Index("idx_shipments_tenant_order", "tenant_id", "order_id"),
        Index("idx_shipments_tenant_created", "tenant_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Shipment(tracking_number={self.tracking_number!r}, order_id={self.order_id!r}, courier={self.courier!r})>"


class ShipmentEvent(Base):
    """Append-only canonical shipment event.

    One row per logical carrier event, deduplicated by idempotency_key.
    internal_status is null when no mapping rule matched; such rows
    form the unresolved work queue.

    Attributes:
        ingestion_mode: Channel the event arrived through (api, csv, email, manual).
        is_primary: False for secondary tracking references found in one email.
        anomaly: True when the event tried to regress a terminal order.
        raw_data: JSON blob of the source payload (redacted).
    """

    __tablename__ = "shipment_events"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    shipment_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tracking_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_status: Mapped[str] = mapped_column(String(100), nullable=False)
    internal_status: Mapped[str | None] = mapped_column(String(40), nullable=True)
    location: Mapped[str | None] = mapped_column(String(200), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[str] = mapped_column(String(50), nullable=False)
    ingestion_mode: Mapped[str] = mapped_column(String(10), nullable=False)
    is_primary: Mapped[bool] = mapped_column(nullable=False, default=True)
    idempotency_key: Mapped[str] = mapped_column(
        String(200), unique=True, nullable=False
    )
    anomaly: Mapped[bool] = mapped_column(nullable=False, default=False)
    anomaly_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_data: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        Index("idx_shipment_events_tenant_tracking", "tenant_id", "tracking_number"),
        Index("idx_shipment_events_tenant_order", "tenant_id", "order_id"),
        Index("idx_shipment_events_tenant_status", "tenant_id", "internal_status"),
    )

    def __repr__(self) -> str:
        return f"<ShipmentEvent(id={self.id!r}, tracking_number={self.tracking_number!r}, provider_status={self.provider_status!r})>"


class ProviderStatusMapping(Base):
    """Operator-maintained status mapping rule.

    tenant_id and provider accept the wildcard "*". A tenant row beats
    a provider default, which beats a wildcard row.
    """

    __tablename__ = "provider_status_mappings"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_status: Mapped[str] = mapped_column(String(100), nullable=False)
    internal_status: Mapped[str] = mapped_column(String(40), nullable=False)
    triggers_station: Mapped[str | None] = mapped_column(String(20), nullable=True)
    is_terminal: Mapped[bool] = mapped_column(nullable=False, default=False)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "provider",
            "provider_status",
            name="uq_status_mapping_tenant_provider_status",
        ),
    )

    def __repr__(self) -> str:
        return f"<ProviderStatusMapping(tenant_id={self.tenant_id!r}, provider={self.provider!r}, provider_status={self.provider_status!r})>"


class OrderInternalEvent(Base):
    """Immutable order transition log entry.

    An order's current state is the to_state of its latest entry.
    Rows are never updated or deleted.
    """

    __tablename__ = "order_internal_events"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    from_state: Mapped[str | None] = mapped_column(String(40), nullable=True)
    to_state: Mapped[str] = mapped_column(String(40), nullable=False)
    station: Mapped[str] = mapped_column(String(20), nullable=False)
    triggered_by: Mapped[str] = mapped_column(String(20), nullable=False)
    is_reopen: Mapped[bool] = mapped_column(nullable=False, default=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    shipment_event_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    occurred_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "order_id", "seq", name="uq_order_events_tenant_order_seq"
        ),
        Index("idx_order_events_tenant_order", "tenant_id", "order_id"),
    )

    def __repr__(self) -> str:
        return f"<OrderInternalEvent(order_id={self.order_id!r}, seq={self.seq!r}, {self.from_state!r}->{self.to_state!r})>"


class OrderState(Base):
    """Materialized current state of an order.

    Derived from OrderInternalEvent and kept in step with it inside the
    same unit of work.
    """

    __tablename__ = "order_states"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    state: Mapped[str] = mapped_column(String(40), nullable=False)
    station: Mapped[str] = mapped_column(String(20), nullable=False)
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    def __repr__(self) -> str:
        return f"<OrderState(order_id={self.order_id!r}, state={self.state!r})>"


class OrderStationMetrics(Base):
    """Dwell-time record for one order in one station.

    exited_at is null while the order is still in the station. At most
    one open row exists per order.
    """

    __tablename__ = "order_station_metrics"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    station: Mapped[str] = mapped_column(String(20), nullable=False)
    entered_at: Mapped[str] = mapped_column(String(50), nullable=False)
    exited_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    sla_target_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    duration_minutes: Mapped[float | None] = mapped_column(Float, nullable=True)
    sla_breached: Mapped[bool | None] = mapped_column(nullable=True)
    breach_alerted_at: Mapped[str | None] = mapped_column(String(50), nullable=True)

    __table_args__ = (
        Index("idx_station_metrics_tenant_order", "tenant_id", "order_id"),
        Index("idx_station_metrics_tenant_station", "tenant_id", "station"),
    )

    def __repr__(self) -> str:
        return f"<OrderStationMetrics(order_id={self.order_id!r}, station={self.station!r}, open={self.exited_at is None})>"


class CourierPerformanceDaily(Base):
    """Daily per-courier, per-region performance bucket."""

    __tablename__ = "courier_performance_daily"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    courier: Mapped[str] = mapped_column(String(50), nullable=False)
    date: Mapped[str] = mapped_column(String(10), nullable=False)
    region: Mapped[str] = mapped_column(String(100), nullable=False, default="all")
    total_shipments: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    delivered_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    returned_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    avg_pickup_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    avg_delivery_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    avg_return_cycle_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    avg_cod_remittance_hours: Mapped[float | None] = mapped_column(
        Float, nullable=True
    )
    delivery_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    return_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    on_time_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    recommendations: Mapped[str | None] = mapped_column(Text, nullable=True)
    computed_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "courier",
            "date",
            "region",
            name="uq_courier_perf_tenant_courier_date_region",
        ),
        Index("idx_courier_perf_tenant_date", "tenant_id", "date"),
    )

    def __repr__(self) -> str:
        return f"<CourierPerformanceDaily(courier={self.courier!r}, date={self.date!r}, score={self.score!r})>"


class WorkflowExecution(Base):
    """Idempotency ledger: one row per processed logical event."""

    __tablename__ = "workflow_executions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    workflow_name: Mapped[str] = mapped_column(String(100), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(
        String(200), unique=True, nullable=False
    )
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    result: Mapped[str] = mapped_column(String(20), nullable=False, default="success")
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        Index("idx_workflow_exec_tenant_workflow", "tenant_id", "workflow_name"),
    )


class AuditLog(Base):
    """Append-only audit record for transitions and ingestion decisions.

    Attributes:
        event_type: Category of event (see AuditEventType).
        entity_type: Kind of entity touched (order, shipment_event, ...).
        action: Verb describing the decision (transition, skipped, rejected, ...).
        old_value: JSON blob of the prior value, if any (redacted).
        new_value: JSON blob of the new value, if any (redacted).
        workflow_name: Pipeline that produced the record.
    """

    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    level: Mapped[str] = mapped_column(String(10), nullable=False, default="INFO")
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    old_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    workflow_name: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        Index("idx_audit_logs_tenant_entity", "tenant_id", "entity_type", "entity_id"),
        Index("idx_audit_logs_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id!r}, tenant_id={self.tenant_id!r}, level={self.level!r}, type={self.event_type!r})>"


class DeadLetter(Base):
    """Failed workflow step captured for retry or manual intervention.

    Attributes:
        trigger_data: JSON blob of the input that failed, replayed on retry.
        error_stack: Formatted traceback of the original failure.
        retry_count: Number of failed replay attempts so far.
        status: pending, resolved or exhausted.
    """

    __tablename__ = "dead_letters"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    workflow_name: Mapped[str] = mapped_column(String(100), nullable=False)
    trigger_data: Mapped[str] = mapped_column(Text, nullable=False)
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    error_stack: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DeadLetterStatus.pending.value
    )
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    last_attempt_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    resolved_at: Mapped[str | None] = mapped_column(String(50), nullable=True)

    __table_args__ = (
        Index("idx_dead_letters_tenant_status", "tenant_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<DeadLetter(id={self.id!r}, workflow_name={self.workflow_name!r}, status={self.status!r})>"
