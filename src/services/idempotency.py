"""Idempotency keys and the execution ledger for at-least-once delivery.

Carrier webhooks are retried, CSV exports are re-uploaded and mailboxes
are re-polled. Every logical event gets a deterministic key; the
WorkflowExecution table holds one row per key so a replay is detected
and reported as skipped instead of being applied twice.
"""

import hashlib
import json
import logging
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.db.models import WorkflowExecution

logger = logging.getLogger(__name__)

# Workflow names used as the first key segment
WORKFLOW_SHIPMENT_INGEST = "shipment-status-ingest"
WORKFLOW_ORDER_TRANSITION = "order-state-transition"
WORKFLOW_COURIER_PERFORMANCE = "courier-performance-compute"
WORKFLOW_SLA_SWEEP = "sla-breach-sweep"


def canonical_json(data: Any) -> str:
    """Serialize data with sorted keys at every level and compact separators.

    Non-JSON values (datetimes, enums, Decimals) are serialized with str().
    """
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def compute_payload_hash(data: Any) -> str:
    """Compute a deterministic SHA-256 hash for an event payload."""
    return hashlib.sha256(canonical_json(data).encode("utf-8")).hexdigest()


def generate_idempotency_key(
    workflow_id: str, tenant_id: str, event_data: dict[str, Any]
) -> str:
    """Generate a deterministic idempotency key for a logical event.

    The key is stable across replays and key orderings of the same
    payload. A change to any field, a different tenant, or a different
    workflow yields a different key.

    Args:
        workflow_id: Name of the workflow guarding the operation.
        tenant_id: Tenant the event belongs to.
        event_data: Fields that identify the logical event.

    Returns:
        Idempotency key string: '{workflow_id}:{tenant_id}:{payload_sha256}'.
    """
    return f"{workflow_id}:{tenant_id}:{compute_payload_hash(event_data)}"


def is_processed(db: Session, idempotency_key: str) -> bool:
    """Return True if an execution with this key was already recorded."""
    return (
        db.query(WorkflowExecution.id)
        .filter(WorkflowExecution.idempotency_key == idempotency_key)
        .first()
        is not None
    )


def record_execution(
    db: Session,
    tenant_id: str,
    workflow_name: str,
    idempotency_key: str,
    entity_type: str,
    entity_id: str | None = None,
    result: str = "success",
) -> WorkflowExecution:
    """Add an execution record to the current unit of work.

    Not committed here: the row must land in the same transaction as
    the work it guards, so a failure rolls both back together.
    """
    execution = WorkflowExecution(
        tenant_id=tenant_id,
        workflow_name=workflow_name,
        idempotency_key=idempotency_key,
        entity_type=entity_type,
        entity_id=entity_id,
        result=result,
    )
    db.add(execution)
    return execution


def is_duplicate_key_error(exc: IntegrityError) -> bool:
    """Return True when an IntegrityError comes from an idempotency key clash.

    A concurrent worker committed the same logical event first; callers
    treat this as a skipped replay.
    """
    message = str(getattr(exc, "orig", exc)).lower()
    return "idempotency_key" in message or "unique" in message


def get_execution_history(
    db: Session,
    tenant_id: str,
    workflow_name: str | None = None,
    limit: int = 50,
) -> list[WorkflowExecution]:
    """List recent workflow executions for a tenant, newest first."""
    query = db.query(WorkflowExecution).filter(WorkflowExecution.tenant_id == tenant_id)
    if workflow_name is not None:
        query = query.filter(WorkflowExecution.workflow_name == workflow_name)
    return query.order_by(WorkflowExecution.created_at.desc()).limit(limit).all()
