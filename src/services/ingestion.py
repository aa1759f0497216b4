"""Ingestion pipeline shared by the api, csv, email and manual channels.

Each canonical event is processed as its own unit of work:

    idempotency check -> status resolution -> shipment lookup ->
    event insert -> order transition (or anomaly flag) ->
    shipment timestamps -> execution record -> audit -> commit

Entry points never raise. Replays come back as skipped successes,
unmatched tracking numbers and unmapped statuses are stored for triage,
and any other failure is rolled back, captured to the dead-letter queue
and reported as {success: false, auditLogId}.
"""

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.db.models import (
    AuditEventType,
    DeadLetter,
    InternalOrderState,
    LogLevel,
    Shipment,
    ShipmentEvent,
    TriggeredBy,
    to_iso,
)
from src.errors import FulfillmentError, TerminalStateRegression
from src.services import normalizer
from src.services.audit_service import AuditService, redact_sensitive
from src.services.dead_letter import (
    capture_dead_letter,
    retry_dead_letters,
    trigger_data_of,
)
from src.services.idempotency import (
    WORKFLOW_SHIPMENT_INGEST,
    generate_idempotency_key,
    is_duplicate_key_error,
    is_processed,
    record_execution,
)
from src.services.normalizer import CanonicalShipmentEvent
from src.services.order_state import OrderStateMachine
from src.services.shipment_service import ShipmentService
from src.services.status_mapping import StatusMappingService, StatusRule

logger = logging.getLogger(__name__)

_S = InternalOrderState
PICKUP_STATES = frozenset({_S.shipped, _S.in_transit, _S.out_for_delivery})


@dataclass
class IngestResult:
    """Structured outcome returned by every ingestion entry point.

    skipped=True marks an idempotent replay and counts as success.
    """

    success: bool
    data: dict[str, Any] | None = None
    skipped: bool | None = None
    reason: str | None = None
    audit_log_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            result["data"] = self.data
        if self.skipped is not None:
            result["skipped"] = self.skipped
        if self.reason is not None:
            result["reason"] = self.reason
        if self.audit_log_id is not None:
            result["auditLogId"] = self.audit_log_id
        return result


class IngestionService:
    """Entry points for every ingestion channel plus triage work queues.

    Attributes:
        db: SQLAlchemy session for database operations.
        default_provider: Provider code used when a payload names none.
        email_excerpt_chars: Length of the email body kept as description.
    """

    def __init__(
        self,
        db: Session,
        default_provider: str = normalizer.DEFAULT_PROVIDER,
        email_excerpt_chars: int = normalizer.DEFAULT_EMAIL_EXCERPT_CHARS,
    ) -> None:
        self.db = db
        self.default_provider = default_provider
        self.email_excerpt_chars = email_excerpt_chars
        self.mappings = StatusMappingService(db)
        self.shipments = ShipmentService(db)
        self.machine = OrderStateMachine(db)
        self.audit = AuditService(db)

    # Channel entry points

    def submit_api_event(self, tenant_id: str, raw_body: Any) -> IngestResult:
        """Ingest a carrier webhook body (one event or a batch envelope)."""
        try:
            events = normalizer.normalize_api_payload(
                tenant_id, raw_body, self.default_provider
            )
        except Exception as e:
            return self._fail(tenant_id, {"channel": "api", "body": raw_body}, e)
        if not events:
            return self._reject(tenant_id, "api", FulfillmentError.from_code("E-1001", channel="api"))
        results = [self.process_event(event) for event in events]
        if len(results) == 1:
            return results[0]
        return IngestResult(
            success=all(r.success for r in results),
            data={"results": [r.to_dict() for r in results]},
        )

    def submit_csv_batch(
        self, tenant_id: str, csv_text: str, provider: str | None = None
    ) -> list[IngestResult]:
        """Ingest a CSV export; every row is an independent idempotent unit."""
        try:
            events = normalizer.parse_csv_batch(
                tenant_id, csv_text, provider or self.default_provider
            )
        except Exception as e:
            return [self._fail(tenant_id, {"channel": "csv", "csv_text": csv_text}, e)]
        results = [self.process_event(event) for event in events]
        logger.info(
            "csv_batch_ingested tenant=%s rows=%d ok=%d skipped=%d failed=%d",
            tenant_id,
            len(results),
            sum(1 for r in results if r.success and not r.skipped),
            sum(1 for r in results if r.skipped),
            sum(1 for r in results if not r.success),
        )
        return results

    def submit_email_event(
        self, tenant_id: str, email_body: str, provider: str | None = None
    ) -> IngestResult:
        """Ingest an inbound carrier email.

        The primary tracking reference determines the returned result;
        secondary references are processed too and listed under data.related.
        """
        try:
            events = normalizer.normalize_email(
                tenant_id,
                email_body,
                provider or self.default_provider,
                self.email_excerpt_chars,
            )
        except Exception as e:
            return self._fail(tenant_id, {"channel": "email", "email_body": email_body}, e)
        if not events:
            extraction = normalizer.parse_email(email_body or "", self.email_excerpt_chars)
            rejected = self._reject(
                tenant_id,
                "email",
                FulfillmentError.from_code("E-1002"),
                {"status": extraction.status},
            )
            rejected.data = {"tracking_number": None, "status": extraction.status}
            return rejected

        primary, *related = [self.process_event(event) for event in events]
        if related:
            primary.data = {
                **(primary.data or {}),
                "related": [r.to_dict() for r in related],
            }
        return primary

    def submit_manual_event(self, tenant_id: str, entry: dict[str, Any]) -> IngestResult:
        """Ingest an operator's manual entry {tracking_number, status, note}."""
        try:
            events = normalizer.normalize_manual(tenant_id, entry, self.default_provider)
        except Exception as e:
            return self._fail(tenant_id, {"channel": "manual", "entry": entry}, e)
        if not events:
            return self._reject(tenant_id, "manual", FulfillmentError.from_code("E-1002"))
        if events[0].provider_status == normalizer.UNRESOLVED_STATUS and not any(
            entry.get(key) for key in ("status", "provider_status")
        ):
            return self._reject(tenant_id, "manual", FulfillmentError.from_code("E-1004"))
        return self.process_event(events[0])

    # Core pipeline

    def process_event(
        self, event: CanonicalShipmentEvent, now: datetime | None = None
    ) -> IngestResult:
        """Run one canonical event through the pipeline. Never raises."""
        try:
            return self._process(event, now)
        except Exception as e:
            return self._fail(event.tenant_id, event.to_trigger_data(), e)

    def _process(
        self, event: CanonicalShipmentEvent, now: datetime | None = None
    ) -> IngestResult:
        now = now or datetime.now(UTC)
        key = generate_idempotency_key(
            WORKFLOW_SHIPMENT_INGEST, event.tenant_id, event.idempotency_payload()
        )
        if is_processed(self.db, key):
            return self._skipped(event, key)

        try:
            result = self._apply(event, key, now)
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            if is_duplicate_key_error(e) and is_processed(self.db, key):
                return self._skipped(event, key)
            raise
        return result

    def _apply(
        self, event: CanonicalShipmentEvent, key: str, now: datetime
    ) -> IngestResult:
        tenant_id = event.tenant_id
        rule = self.mappings.resolve(tenant_id, event.provider, event.provider_status)

        shipment = self.shipments.get_by_tracking(tenant_id, event.tracking_number or "")
        if shipment is None and event.order_id:
            shipment = self.shipments.register_shipment(
                tenant_id,
                event.order_id,
                event.tracking_number or "",
                event.provider,
                region=event.region,
                created_at=event.occurred_at or now,
                commit=False,
            )

        row = ShipmentEvent(
            tenant_id=tenant_id,
            shipment_id=shipment.id if shipment else None,
            order_id=shipment.order_id if shipment else None,
            tracking_number=event.tracking_number,
            provider=event.provider,
            provider_status=event.provider_status,
            internal_status=rule.internal_status.value if rule else None,
            location=event.location,
            description=event.description,
            occurred_at=to_iso(event.occurred_at or now),
            ingestion_mode=event.ingestion_mode.value,
            is_primary=event.is_primary,
            idempotency_key=key,
            raw_data=_encode_raw(event.raw_data),
        )
        self.db.add(row)
        self.db.flush()
        record_execution(
            self.db, tenant_id, WORKFLOW_SHIPMENT_INGEST, key, "shipment_event", row.id
        )

        data: dict[str, Any] = {
            "event_id": row.id,
            "tracking_number": row.tracking_number,
            "provider_status": row.provider_status,
            "internal_status": row.internal_status,
            "order_id": row.order_id,
            "is_primary": row.is_primary,
        }
        reason = None
        outcome = "ingested"
        level = LogLevel.INFO
        if shipment is None:
            outcome = "unmatched"
            level = LogLevel.WARNING
            reason = str(
                FulfillmentError.from_code(
                    "E-1003", tracking_number=event.tracking_number
                )
            )
        elif rule is None:
            outcome = "unmapped"
            level = LogLevel.WARNING
            reason = str(
                FulfillmentError.from_code(
                    "E-2001", provider=event.provider, provider_status=event.provider_status
                )
            )
            _touch_shipment(shipment, row, None)
        else:
            outcome, reason, transition = self._advance(row, shipment, rule, now)
            if transition is not None:
                data["transition"] = transition
            if outcome == "anomaly":
                level = LogLevel.WARNING

        event_type = {
            "unmatched": AuditEventType.shipment_unmatched,
            "unmapped": AuditEventType.status_unmapped,
        }.get(outcome, AuditEventType.shipment_ingested)
        audit_entry = self.audit.log(
            tenant_id=tenant_id,
            event_type=event_type,
            entity_type="shipment_event",
            entity_id=row.id,
            action=outcome,
            workflow_name=WORKFLOW_SHIPMENT_INGEST,
            new_value={
                "tracking_number": row.tracking_number,
                "provider": row.provider,
                "provider_status": row.provider_status,
                "internal_status": row.internal_status,
                "ingestion_mode": row.ingestion_mode,
                "order_id": row.order_id,
            },
            level=level,
        )
        data["outcome"] = outcome
        logger.info(
            "shipment_event_%s tenant=%s tracking=%s status=%r internal=%s",
            outcome,
            tenant_id,
            row.tracking_number,
            row.provider_status,
            row.internal_status,
        )
        return IngestResult(
            success=True, data=data, reason=reason, audit_log_id=audit_entry.id
        )

    def _advance(
        self,
        row: ShipmentEvent,
        shipment: Shipment,
        rule: StatusRule,
        now: datetime,
    ) -> tuple[str, str | None, dict[str, Any] | None]:
        """Apply a resolved event to its order, flagging terminal regressions.

        Returns:
            (outcome, reason, transition dict or None)
        """
        try:
            transition = self.machine.apply_transition(
                row.tenant_id,
                shipment.order_id,
                rule.internal_status,
                triggered_by=TriggeredBy.automation,
                notes=f"{row.provider} {row.provider_status} via {row.ingestion_mode}",
                shipment_event_id=row.id,
                now=now,
                workflow_name=WORKFLOW_SHIPMENT_INGEST,
            )
        except TerminalStateRegression as e:
            row.anomaly = True
            row.anomaly_reason = str(e)
            self.audit.log_anomaly(
                row.tenant_id,
                shipment.order_id,
                e.current_state,
                e.attempted_state,
                WORKFLOW_SHIPMENT_INGEST,
                shipment_event_id=row.id,
            )
            logger.warning(
                "terminal_regression_rejected tenant=%s order=%s current=%s attempted=%s",
                row.tenant_id,
                shipment.order_id,
                e.current_state,
                e.attempted_state,
            )
            _touch_shipment(shipment, row, None)
            reason = str(
                FulfillmentError.from_code(
                    "E-3001",
                    order_id=shipment.order_id,
                    current_state=e.current_state,
                    attempted_state=e.attempted_state,
                )
            )
            return "anomaly", reason, None

        applied = transition.to_state == rule.internal_status.value
        _touch_shipment(shipment, row, rule if applied else None)
        outcome = "transitioned" if transition.changed else "unchanged"
        return outcome, None, transition.to_dict()

    # Failure handling

    def _skipped(self, event: CanonicalShipmentEvent, key: str) -> IngestResult:
        logger.info(
            "shipment_event_skipped tenant=%s tracking=%s reason=duplicate",
            event.tenant_id,
            event.tracking_number,
        )
        return IngestResult(
            success=True,
            skipped=True,
            reason="duplicate event",
            data={"tracking_number": event.tracking_number, "idempotency_key": key},
        )

    def _reject(
        self,
        tenant_id: str,
        channel: str,
        error: FulfillmentError,
        details: dict[str, Any] | None = None,
    ) -> IngestResult:
        """Record an input that produced no events. Never raises."""
        audit_log_id = None
        try:
            entry = self.audit.log(
                tenant_id=tenant_id,
                event_type=AuditEventType.shipment_ingested,
                entity_type="ingestion",
                entity_id=None,
                action="rejected",
                workflow_name=WORKFLOW_SHIPMENT_INGEST,
                new_value={"channel": channel, "error_code": error.code, **(details or {})},
                level=LogLevel.WARNING,
                commit=True,
            )
            audit_log_id = entry.id
        except Exception:
            self.db.rollback()
            logger.exception("ingestion_reject_audit_failed tenant=%s", tenant_id)
        logger.info("ingestion_rejected tenant=%s channel=%s code=%s", tenant_id, channel, error.code)
        return IngestResult(success=False, reason=str(error), audit_log_id=audit_log_id)

    def _fail(
        self, tenant_id: str, trigger_data: dict[str, Any], error: Exception
    ) -> IngestResult:
        """Roll back, dead-letter and audit a failed step. Never raises."""
        code = "E-4001" if isinstance(error, IntegrityError) else "E-4002"
        formatted = FulfillmentError.from_code(code, error=str(error))
        try:
            self.db.rollback()
            letter = capture_dead_letter(
                self.db, WORKFLOW_SHIPMENT_INGEST, trigger_data, error, tenant_id
            )
            entry = self.audit.log_error(
                tenant_id,
                formatted.code,
                str(error),
                WORKFLOW_SHIPMENT_INGEST,
                entity_type="dead_letter",
                entity_id=letter.id,
                commit=True,
            )
        except Exception:
            self.db.rollback()
            logger.exception(
                "dead_letter_capture_failed tenant=%s original_error=%s", tenant_id, error
            )
            return IngestResult(success=False, reason=str(formatted))
        return IngestResult(
            success=False,
            reason=str(formatted),
            audit_log_id=entry.id,
            data={"dead_letter_id": letter.id},
        )

    # Replay and triage

    def replay_dead_letters(self, tenant_id: str) -> dict[str, int]:
        """Replay the tenant's pending ingestion dead letters."""

        def handler(letter: DeadLetter) -> None:
            data = trigger_data_of(letter)
            if "tracking_number" not in data:
                raise ValueError("dead letter does not hold a canonical event")
            self._process(CanonicalShipmentEvent.from_trigger_data(data))

        return retry_dead_letters(
            self.db, handler, tenant_id, workflow_name=WORKFLOW_SHIPMENT_INGEST
        )

    def attach_unmatched_events(
        self, tenant_id: str, tracking_number: str, now: datetime | None = None
    ) -> int:
        """Link stored events to a newly registered shipment and apply them.

        Returns:
            Number of events attached.
        """
        shipment = self.shipments.get_by_tracking(tenant_id, tracking_number)
        if shipment is None:
            return 0
        rows = (
            self.db.query(ShipmentEvent)
            .filter(
                ShipmentEvent.tenant_id == tenant_id,
                ShipmentEvent.tracking_number == shipment.tracking_number,
                ShipmentEvent.shipment_id.is_(None),
            )
            .order_by(ShipmentEvent.occurred_at.asc())
            .all()
        )
        for row in rows:
            row.shipment_id = shipment.id
            row.order_id = shipment.order_id
            self._reapply(row, shipment, now)
        return len(rows)

    def remap_unresolved_events(self, tenant_id: str, now: datetime | None = None) -> int:
        """Re-resolve events stored without an internal status.

        Run after adding status mappings. Returns the number of events
        that now resolve.
        """
        rows = (
            self.db.query(ShipmentEvent)
            .filter(
                ShipmentEvent.tenant_id == tenant_id,
                ShipmentEvent.internal_status.is_(None),
                ShipmentEvent.shipment_id.is_not(None),
            )
            .order_by(ShipmentEvent.occurred_at.asc())
            .all()
        )
        resolved = 0
        for row in rows:
            shipment = self.db.get(Shipment, row.shipment_id)
            if shipment is None:
                continue
            if self._reapply(row, shipment, now):
                resolved += 1
        return resolved

    def _reapply(
        self, row: ShipmentEvent, shipment: Shipment, now: datetime | None
    ) -> bool:
        """Resolve and apply one stored event in its own unit of work."""
        rule = self.mappings.resolve(row.tenant_id, row.provider, row.provider_status)
        if rule is None:
            self.db.commit()
            return False
        row.internal_status = rule.internal_status.value
        try:
            outcome, _, _ = self._advance(row, shipment, rule, now or datetime.now(UTC))
            self.audit.log(
                tenant_id=row.tenant_id,
                event_type=AuditEventType.shipment_ingested,
                entity_type="shipment_event",
                entity_id=row.id,
                action=f"reprocessed_{outcome}",
                workflow_name=WORKFLOW_SHIPMENT_INGEST,
                new_value={"internal_status": row.internal_status, "order_id": row.order_id},
            )
            self.db.commit()
        except Exception as e:
            self._fail(row.tenant_id, {"shipment_event_id": row.id}, e)
            return False
        return True

    def list_unresolved_events(self, tenant_id: str, limit: int = 100) -> list[ShipmentEvent]:
        """Events with no internal status or no matching shipment."""
        return (
            self.db.query(ShipmentEvent)
            .filter(
                ShipmentEvent.tenant_id == tenant_id,
                (ShipmentEvent.internal_status.is_(None))
                | (ShipmentEvent.shipment_id.is_(None)),
            )
            .order_by(ShipmentEvent.created_at.desc())
            .limit(limit)
            .all()
        )

    def list_anomalies(self, tenant_id: str, limit: int = 100) -> list[ShipmentEvent]:
        """Events whose transition was rejected as a terminal regression."""
        return (
            self.db.query(ShipmentEvent)
            .filter(ShipmentEvent.tenant_id == tenant_id, ShipmentEvent.anomaly.is_(True))
            .order_by(ShipmentEvent.created_at.desc())
            .limit(limit)
            .all()
        )


def _touch_shipment(
    shipment: Shipment, row: ShipmentEvent, rule: StatusRule | None
) -> None:
    """Copy the latest carrier status and milestone timestamps onto the shipment."""
    if shipment.last_event_at is None or row.occurred_at >= shipment.last_event_at:
        shipment.provider_status = row.provider_status
        shipment.last_event_at = row.occurred_at
    if rule is None:
        return
    state = rule.internal_status
    shipment.internal_status = state.value
    if state in PICKUP_STATES and shipment.picked_up_at is None:
        shipment.picked_up_at = row.occurred_at
    elif state == _S.delivered and shipment.delivered_at is None:
        shipment.delivered_at = row.occurred_at
    elif state == _S.return_received and shipment.returned_at is None:
        shipment.returned_at = row.occurred_at


def _encode_raw(raw_data: dict[str, Any] | None) -> str | None:
    if raw_data is None:
        return None
    return json.dumps(redact_sensitive(raw_data), default=str)
