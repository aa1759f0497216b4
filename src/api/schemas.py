"""Pydantic schemas for API request/response validation.

This module defines the data contracts for the fulfillment tracking
REST API: ingestion, orders, stations, couriers, status mappings, dead
letters and audit log export.
"""

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.db.models import InternalOrderState, Station


def _decode_json(value: Any) -> Any:
    """Parse JSON text columns; pass through already-decoded values."""
    if value is None or not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return {"raw": value}


# Ingestion schemas


class IngestResponse(BaseModel):
    """Structured result of one ingestion entry point."""

    success: bool
    data: dict[str, Any] | None = None
    skipped: bool | None = None
    reason: str | None = None
    auditLogId: str | None = None


class CsvIngestRequest(BaseModel):
    """JSON form of a CSV batch submission."""

    csv: str
    provider: str | None = None


class EmailIngestRequest(BaseModel):
    """Inbound carrier email."""

    body: str = Field(..., min_length=1)
    provider: str | None = None


class ManualIngestRequest(BaseModel):
    """Operator-entered status update."""

    tracking_number: str = Field(..., min_length=1)
    status: str = Field(..., min_length=1)
    note: str | None = None
    provider: str | None = None
    location: str | None = None
    occurred_at: datetime | None = None


class CsvIngestResponse(BaseModel):
    """Per-row results of a CSV batch."""

    total: int
    succeeded: int
    skipped: int
    failed: int
    results: list[IngestResponse]


# Shipment schemas


class ShipmentCreate(BaseModel):
    """Register a tracking number against an order."""

    order_id: str = Field(..., min_length=1, max_length=64)
    tracking_number: str = Field(..., min_length=1, max_length=64)
    courier: str = Field(..., min_length=1, max_length=50)
    region: str | None = Field(None, max_length=50)
    created_at: datetime | None = None


class ShipmentResponse(BaseModel):
    """Shipment with carrier milestones."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str
    tracking_number: str
    courier: str
    region: str | None
    provider_status: str | None
    internal_status: str | None
    created_at: str
    picked_up_at: str | None
    delivered_at: str | None
    returned_at: str | None
    cod_remitted_at: str | None
    last_event_at: str | None


class ShipmentCreateResponse(BaseModel):
    """Registered shipment plus count of stored events attached to it."""

    shipment: ShipmentResponse
    attached_events: int


class ShipmentEventResponse(BaseModel):
    """Stored carrier event."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    shipment_id: str | None
    order_id: str | None
    tracking_number: str | None
    provider: str
    provider_status: str
    internal_status: str | None
    location: str | None
    description: str | None
    occurred_at: str
    ingestion_mode: str
    is_primary: bool
    anomaly: bool
    anomaly_reason: str | None
    created_at: str


class WorkflowExecutionResponse(BaseModel):
    """One processed logical event from the idempotency ledger."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    workflow_name: str
    idempotency_key: str
    entity_type: str
    entity_id: str | None
    result: str
    created_at: str


# Order schemas


class OrderTransitionRequest(BaseModel):
    """Operator-driven state change."""

    to_state: InternalOrderState
    notes: str | None = Field(None, max_length=500)


class OrderReopenRequest(BaseModel):
    """Explicit reopen of a terminal order."""

    to_state: InternalOrderState
    reason: str = Field(..., min_length=1, max_length=500)


class TransitionResponse(BaseModel):
    """Outcome of a transition or reopen."""

    order_id: str
    from_state: str | None
    to_state: str
    station: str
    changed: bool
    station_changed: bool = False
    event_id: str | None = None


class OrderEventResponse(BaseModel):
    """One entry of an order's transition log."""

    model_config = ConfigDict(from_attributes=True)

    seq: int
    from_state: str | None
    to_state: str
    station: str
    triggered_by: str
    is_reopen: bool
    notes: str | None
    shipment_event_id: str | None
    occurred_at: str


class StationMetricResponse(BaseModel):
    """Station dwell row with breach computed on read."""

    model_config = ConfigDict(from_attributes=True)

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


class OrderStateResponse(BaseModel):
    """Current state of an order with its history."""

    order_id: str
    state: str
    station: str
    updated_at: str
    is_terminal: bool
    terminal_lock: str | None
    open_station: StationMetricResponse | None
    history: list[OrderEventResponse]
    shipments: list[ShipmentResponse] = []


# Station schemas


class StationSummaryResponse(BaseModel):
    """Per-station queue summary."""

    model_config = ConfigDict(from_attributes=True)

    station: str
    open_count: int
    breached_count: int
    avg_wait_minutes: float
    sla_target_minutes: int


class SweepResponse(BaseModel):
    """Rows alerted by an SLA sweep."""

    alerted: int
    rows: list[StationMetricResponse]


# Courier schemas


class CourierPerformanceResponse(BaseModel):
    """Daily courier performance row."""

    model_config = ConfigDict(from_attributes=True)

    courier: str
    date: str
    region: str
    total_shipments: int
    delivered_count: int
    returned_count: int
    avg_pickup_hours: float
    avg_delivery_hours: float
    avg_return_cycle_hours: float
    avg_cod_remittance_hours: float
    delivery_rate: float
    return_rate: float
    on_time_rate: float
    score: int
    recommendations: list[str] = []
    computed_at: str

    @field_validator("recommendations", mode="before")
    @classmethod
    def _parse_recommendations(cls, v: Any) -> list[str]:
        """Recommendations are stored as JSON text."""
        decoded = _decode_json(v)
        return decoded if isinstance(decoded, list) else []


class CourierRankingResponse(BaseModel):
    """Courier ranked for a region by its latest stored score."""

    model_config = ConfigDict(from_attributes=True)

    rank: int
    courier: str
    region: str
    date: str
    score: int
    total_shipments: int
    delivery_rate: float
    return_rate: float
    on_time_rate: float
    recommendations: list[str] = []


class CourierComputeRequest(BaseModel):
    """Trigger a courier performance recomputation."""

    report_date: str | None = Field(None, description="YYYY-MM-DD, default today")
    window_days: int | None = Field(None, ge=1, le=365)


class CourierComputeResponse(BaseModel):
    """Summary of a recomputation."""

    report_date: str
    buckets: int


# Status mapping schemas


class StatusMappingUpsert(BaseModel):
    """Create or update a tenant status mapping."""

    provider: str = Field(..., min_length=1, max_length=50)
    provider_status: str = Field(..., min_length=1, max_length=100)
    internal_status: str
    triggers_station: Station | None = None
    is_terminal: bool | None = None


class StatusMappingResponse(BaseModel):
    """Effective status mapping rule."""

    id: str | None
    scope: str
    tenant_id: str
    provider: str
    provider_status: str
    internal_status: str
    triggers_station: str
    is_terminal: bool
    builtin: bool


class StatusMappingUpsertResponse(BaseModel):
    """Upserted rule plus count of stored events it now resolves."""

    mapping: StatusMappingResponse
    remapped_events: int


# Dead letter schemas


class DeadLetterResponse(BaseModel):
    """Captured workflow failure."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str | None
    workflow_name: str
    trigger_data: dict[str, Any] | None
    error_message: str
    last_error: str | None
    retry_count: int
    max_retries: int
    status: str
    created_at: str
    last_attempt_at: str | None
    resolved_at: str | None

    @field_validator("trigger_data", mode="before")
    @classmethod
    def _parse_trigger_data(cls, v: Any) -> Any:
        return _decode_json(v)


class RetryResponse(BaseModel):
    """Counts from a dead-letter replay."""

    resolved: int
    failed: int
    exhausted: int


# Audit log schemas


class AuditLogResponse(BaseModel):
    """Response schema for an audit log entry."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    level: str
    event_type: str
    entity_type: str
    entity_id: str | None
    action: str
    old_value: Any = None
    new_value: Any = None
    workflow_name: str
    created_at: str

    @field_validator("old_value", "new_value", mode="before")
    @classmethod
    def _parse_values(cls, v: Any) -> Any:
        """Parse JSON values stored as text."""
        return _decode_json(v)


# Error schemas


class ErrorResponse(BaseModel):
    """Standard error response format."""

    error_code: str
    message: str
    remediation: str | None = None
    details: dict[str, Any] | None = None
