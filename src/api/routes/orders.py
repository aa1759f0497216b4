"""FastAPI routes for order state.

Operator transitions go through the same state machine as carrier
events, so the terminal lock applies to them too. Reopening a terminal
order is a separate endpoint with a fixed set of targets.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from src.api.schemas import (
    OrderEventResponse,
    OrderReopenRequest,
    OrderStateResponse,
    OrderTransitionRequest,
    ShipmentResponse,
    StationMetricResponse,
    TransitionResponse,
)
from src.api.dependencies import get_tenant_id
from src.db.connection import get_db
from src.db.models import TriggeredBy
from src.services.order_state import OrderStateMachine
from src.services.shipment_service import ShipmentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


def get_state_machine(db: Session = Depends(get_db)) -> OrderStateMachine:
    """Dependency to get OrderStateMachine instance."""
    return OrderStateMachine(db)


@router.get("/{order_id}", response_model=OrderStateResponse)
def get_order_state(
    order_id: str,
    tenant_id: str = Depends(get_tenant_id),
    machine: OrderStateMachine = Depends(get_state_machine),
) -> OrderStateResponse:
    """Current state, station, open SLA row, history and shipments.

    Raises:
        NotFoundError: If the order has no recorded state (404).
    """
    detail = machine.describe(tenant_id, order_id)
    open_station = detail["open_station"]
    return OrderStateResponse(
        order_id=detail["order_id"],
        state=detail["state"],
        station=detail["station"],
        updated_at=detail["updated_at"],
        is_terminal=detail["is_terminal"],
        terminal_lock=detail["terminal_lock"],
        open_station=(
            StationMetricResponse.model_validate(open_station) if open_station else None
        ),
        history=[OrderEventResponse.model_validate(e) for e in detail["history"]],
        shipments=[
            ShipmentResponse.model_validate(s)
            for s in ShipmentService(machine.db).list_for_order(tenant_id, order_id)
        ],
    )


@router.post("/{order_id}/transitions", response_model=TransitionResponse)
def transition_order(
    order_id: str,
    payload: OrderTransitionRequest,
    tenant_id: str = Depends(get_tenant_id),
    machine: OrderStateMachine = Depends(get_state_machine),
) -> TransitionResponse:
    """Apply an operator-driven transition.

    Raises:
        TerminalStateRegression: If the order is terminal-locked (409).
    """
    result = machine.apply_transition(
        tenant_id,
        order_id,
        payload.to_state,
        triggered_by=TriggeredBy.user,
        notes=payload.notes,
    )
    machine.db.commit()
    return TransitionResponse(**result.to_dict())


@router.post("/{order_id}/reopen", response_model=TransitionResponse)
def reopen_order(
    order_id: str,
    payload: OrderReopenRequest,
    tenant_id: str = Depends(get_tenant_id),
    machine: OrderStateMachine = Depends(get_state_machine),
) -> TransitionResponse:
    """Reopen a terminal order into a permitted follow-up state.

    Raises:
        NotFoundError: If the order is unknown (404).
        InvalidTransition: If the order is not locked or the target is
            not allowed (409).
    """
    result = machine.reopen(tenant_id, order_id, payload.to_state, payload.reason)
    machine.db.commit()
    logger.info(
        "order_reopened tenant=%s order=%s to=%s", tenant_id, order_id, result.to_state
    )
    return TransitionResponse(**result.to_dict())


@router.get("/{order_id}/consistency")
def check_order_consistency(
    order_id: str,
    tenant_id: str = Depends(get_tenant_id),
    machine: OrderStateMachine = Depends(get_state_machine),
) -> dict:
    """Compare materialized state with the state recomputed from the log."""
    report = machine.verify_consistency(tenant_id, order_id)
    return {
        "order_id": report.order_id,
        "consistent": report.consistent,
        "materialized": report.materialized,
        "recomputed": report.recomputed,
        "history_length": report.history_length,
        "notes": report.notes,
    }
