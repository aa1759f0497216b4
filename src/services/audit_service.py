"""Audit logging service for the fulfillment tracker.

This module provides tenant-scoped, append-only audit logging with
automatic redaction of sensitive data (customer PII, credentials).
Every state transition and ingestion decision writes one record.
Supports plain text export for debugging and compliance.

Usage:
    from src.db.connection import get_db, init_db
    from src.services.audit_service import AuditService

    init_db()
    db = next(get_db())
    audit = AuditService(db)

    audit.log_transition(tenant_id, order_id, 'shipped', 'in_transit', 'operations')

    # Export logs as plain text
    export = audit.export_logs_text(tenant_id, entity_type='order', entity_id=order_id)
"""

import json
import re
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.orm import Session

from src.db.models import AuditEventType, AuditLog, LogLevel, utc_now_iso


__all__ = [
    "AuditService",
    "redact_sensitive",
    "LogLevel",
    "AuditEventType",
    "REDACT_FIELDS",
    "REDACTED",
]


# Substrings of payload keys whose values never reach the audit table.
REDACT_FIELDS = frozenset(
    {
        "address",
        "street",
        "postal_code",
        "zip_code",
        "phone",
        "mobile",
        "email",
        "customer_name",
        "recipient_name",
        "consignee",
        "national_id",
        "password",
        "api_key",
        "access_token",
        "refresh_token",
        "client_secret",
        "authorization",
    }
)

REDACTED = "[REDACTED]"
_MAX_REDACT_DEPTH = 10


def _is_sensitive_key(key: Any) -> bool:
    normalized = str(key).lower().replace("-", "_")
    return any(fragment in normalized for fragment in REDACT_FIELDS)


def redact_sensitive(
    data: dict | list | str | None, _depth: int = 0
) -> dict | list | str | None:
    """Copy ``data`` with customer contact details and credentials masked.

    Keys are matched by substring after lowercasing and turning dashes
    into underscores, so ``Consignee-Phone`` is caught. Anything nested
    deeper than ten levels is masked whole.

        >>> redact_sensitive({"consignee_phone": "+9665", "status": "DEL"})
        {'consignee_phone': '[REDACTED]', 'status': 'DEL'}
    """
    if _depth > _MAX_REDACT_DEPTH:
        return REDACTED
    if isinstance(data, dict):
        return {
            key: REDACTED if _is_sensitive_key(key) else redact_sensitive(value, _depth + 1)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [redact_sensitive(item, _depth + 1) for item in data]
    return data


def _encode(value: Any) -> str | None:
    """Redact and JSON-encode an audit value."""
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        value = redact_sensitive(value)
    return json.dumps(value, default=str)


class AuditService:
    """Service for tenant-scoped audit logging with sensitive data redaction.

    Records are only ever inserted. By default each call flushes into the
    caller's unit of work so the audit row commits (or rolls back)
    together with the change it describes; pass commit=True for
    standalone records.

    Attributes:
        db: SQLAlchemy session for database operations.
    """

    def __init__(self, db: Session) -> None:
        """Initialize the audit service.

        Args:
            db: SQLAlchemy session for database operations.
        """
        self.db = db

    def log(
        self,
        tenant_id: str,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str | None,
        action: str,
        workflow_name: str,
        old_value: Any = None,
        new_value: Any = None,
        level: LogLevel = LogLevel.INFO,
        commit: bool = False,
    ) -> AuditLog:
        """Create an audit log entry.

        Core logging method that all other log methods delegate to.
        Automatically redacts sensitive data in old/new values before storage.

        Args:
            tenant_id: Tenant the record belongs to.
            event_type: Category of event.
            entity_type: Kind of entity touched (order, shipment_event, ...).
            entity_id: Identifier of the entity, if any.
            action: Verb describing the decision.
            workflow_name: Pipeline that produced the record.
            old_value: Prior value (redacted and JSON-encoded).
            new_value: New value (redacted and JSON-encoded).
            level: Severity level (INFO, WARNING, ERROR).
            commit: Commit immediately instead of flushing into the caller's transaction.

        Returns:
            The created AuditLog entry.
        """
        log_entry = AuditLog(
            tenant_id=tenant_id,
            level=level.value,
            event_type=event_type.value,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            old_value=_encode(old_value),
            new_value=_encode(new_value),
            workflow_name=workflow_name,
            created_at=utc_now_iso(),
        )

        self.db.add(log_entry)
        if commit:
            self.db.commit()
            self.db.refresh(log_entry)
        else:
            self.db.flush()

        return log_entry

    # Event-specific methods

    def log_transition(
        self,
        tenant_id: str,
        order_id: str,
        from_state: str | None,
        to_state: str,
        station: str,
        workflow_name: str,
        triggered_by: str = "system",
    ) -> AuditLog:
        """Log an order state transition."""
        return self.log(
            tenant_id=tenant_id,
            event_type=AuditEventType.state_transition,
            entity_type="order",
            entity_id=order_id,
            action="transition",
            workflow_name=workflow_name,
            old_value={"state": from_state} if from_state else None,
            new_value={"state": to_state, "station": station, "triggered_by": triggered_by},
        )

    def log_anomaly(
        self,
        tenant_id: str,
        order_id: str,
        current_state: str,
        attempted_state: str,
        workflow_name: str,
        shipment_event_id: str | None = None,
    ) -> AuditLog:
        """Log a rejected terminal-state regression for human review."""
        return self.log(
            tenant_id=tenant_id,
            event_type=AuditEventType.anomaly,
            entity_type="order",
            entity_id=order_id,
            action="rejected",
            workflow_name=workflow_name,
            old_value={"state": current_state},
            new_value={
                "attempted_state": attempted_state,
                "shipment_event_id": shipment_event_id,
            },
            level=LogLevel.WARNING,
        )

    def log_error(
        self,
        tenant_id: str,
        error_code: str,
        error_message: str,
        workflow_name: str,
        entity_type: str = "workflow",
        entity_id: str | None = None,
        details: dict[str, Any] | None = None,
        commit: bool = False,
    ) -> AuditLog:
        """Log a workflow failure.

        Args:
            tenant_id: Tenant the failure belongs to.
            error_code: Error code (e.g., 'E-4001').
            error_message: Human-readable error description.
            workflow_name: Workflow that failed.
            entity_type: Kind of entity involved.
            entity_id: Entity identifier, e.g. the dead-letter id.
            details: Optional structured error context.
            commit: Commit immediately.

        Returns:
            The created AuditLog entry.
        """
        error_details: dict[str, Any] = {
            "error_code": error_code,
            "error_message": error_message,
        }
        if details:
            error_details.update(details)

        return self.log(
            tenant_id=tenant_id,
            event_type=AuditEventType.workflow_failed,
            entity_type=entity_type,
            entity_id=entity_id,
            action="failed",
            workflow_name=workflow_name,
            new_value=error_details,
            level=LogLevel.ERROR,
            commit=commit,
        )

    # Query methods

    def get_logs(
        self,
        tenant_id: str,
        entity_type: str | None = None,
        entity_id: str | None = None,
        event_type: AuditEventType | None = None,
        level: LogLevel | None = None,
        limit: int = 1000,
    ) -> list[AuditLog]:
        """Get audit logs for a tenant with optional filters.

        Returns:
            List of AuditLog entries ordered by created_at (oldest first).
        """
        query = self.db.query(AuditLog).filter(AuditLog.tenant_id == tenant_id)

        if entity_type is not None:
            query = query.filter(AuditLog.entity_type == entity_type)
        if entity_id is not None:
            query = query.filter(AuditLog.entity_id == entity_id)
        if event_type is not None:
            query = query.filter(AuditLog.event_type == event_type.value)
        if level is not None:
            query = query.filter(AuditLog.level == level.value)

        return query.order_by(AuditLog.created_at.asc()).limit(limit).all()

    def get_log(self, tenant_id: str, audit_log_id: str) -> AuditLog | None:
        """Get a single audit record, scoped to the tenant."""
        return (
            self.db.query(AuditLog)
            .filter(AuditLog.tenant_id == tenant_id, AuditLog.id == audit_log_id)
            .first()
        )

    # Export methods

    def export_logs_text(
        self,
        tenant_id: str,
        entity_type: str | None = None,
        entity_id: str | None = None,
    ) -> str:
        """Export audit logs as plain text.

        Example output:
            [2026-01-23T10:30:45+00:00] [INFO] [state_transition] order/ORD-1 transition
                new: {"state": "in_transit", "station": "operations"}
        """
        logs = self.get_logs(tenant_id, entity_type=entity_type, entity_id=entity_id)
        lines = []

        for log_entry in logs:
            target = log_entry.entity_type
            if log_entry.entity_id:
                target = f"{target}/{log_entry.entity_id}"
            lines.append(
                f"[{log_entry.created_at}] [{log_entry.level}] "
                f"[{log_entry.event_type}] {target} {log_entry.action}"
            )
            if log_entry.old_value:
                lines.append(f"    old: {log_entry.old_value}")
            if log_entry.new_value:
                lines.append(f"    new: {log_entry.new_value}")

        return "\n".join(lines)

    def export_logs_for_download(self, tenant_id: str, label: str) -> tuple[str, str]:
        """Generate filename and content for log download.

        Filename format: {label}_audit_{timestamp}.txt
        """
        clean_label = re.sub(r"[^\w\s-]", "", label)
        clean_label = re.sub(r"\s+", "_", clean_label).strip("_") or "audit"
        timestamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
        return f"{clean_label}_audit_{timestamp}.txt", self.export_logs_text(tenant_id)
