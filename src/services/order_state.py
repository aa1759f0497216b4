"""Per-order state machine with station routing.

The transition log (OrderInternalEvent) is the source of truth: an
order's current state is the to_state of its latest entry. OrderState
is a materialized copy kept in step inside the same unit of work, and
verify_consistency() checks that the two agree.

Terminal lock: once the log holds a terminal state (delivered,
cancelled, return_received) since the last explicit reopen, a
non-terminal target is rejected with TerminalStateRegression. The only
exception is the settlement hook (finance_pending / finance_settled
after a terminal state, triggered by the system or a user). Reopening
is a separate, audited operation with a fixed table of targets.

Methods stage their writes in the session and never commit; the caller
commits once so the transition, the station metrics close/open pair
and the audit record land atomically.
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from src.db.models import (
    AuditEventType,
    InternalOrderState,
    OrderInternalEvent,
    OrderState,
    Station,
    TriggeredBy,
    to_iso,
)
from src.errors import InvalidTransition, NotFoundError, TerminalStateRegression
from src.services.audit_service import AuditService
from src.services.idempotency import WORKFLOW_ORDER_TRANSITION
from src.services.sla_tracker import StationSlaTracker
from src.services.station_routing import coerce_state, is_terminal_state, station_for_state

logger = logging.getLogger(__name__)

_S = InternalOrderState

# Follow-up states the settlement hook may move a terminal order into
SETTLEMENT_STATES = frozenset({_S.finance_pending, _S.finance_settled})
SETTLEMENT_SOURCES = frozenset({_S.delivered, _S.return_received})
SETTLEMENT_ACTORS = frozenset({TriggeredBy.system, TriggeredBy.user})

# Terminal state -> states an explicit reopen may move the order to
REOPEN_TARGETS: dict[InternalOrderState, frozenset[InternalOrderState]] = {
    _S.delivered: frozenset({_S.return_requested}),
    _S.return_received: frozenset({_S.operations_pending}),
    _S.cancelled: frozenset({_S.call_center_pending, _S.operations_pending}),
}

# Terminal state -> terminal states a carrier event may still move it to
TERMINAL_FOLLOW_UPS: dict[InternalOrderState, frozenset[InternalOrderState]] = {
    _S.delivered: frozenset({_S.return_received}),
    _S.cancelled: frozenset({_S.return_received}),
}


@dataclass
class TransitionResult:
    """Outcome of apply_transition()."""

    order_id: str
    from_state: str | None
    to_state: str
    station: str
    changed: bool
    station_changed: bool = False
    event_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "station": self.station,
            "changed": self.changed,
            "station_changed": self.station_changed,
            "event_id": self.event_id,
        }


@dataclass
class ConsistencyReport:
    """Materialized vs recomputed state for one order."""

    order_id: str
    materialized: str | None
    recomputed: str | None
    history_length: int = 0
    notes: list[str] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return self.materialized == self.recomputed


class OrderStateMachine:
    """Applies transitions to orders and routes them between stations.

    Attributes:
        db: SQLAlchemy session for database operations.
        sla: Station tracker sharing the same session.
    """

    def __init__(self, db: Session) -> None:
        self.db = db
        self.sla = StationSlaTracker(db)
        self.audit = AuditService(db)

    # Reads

    def get_state(self, tenant_id: str, order_id: str) -> OrderState | None:
        """Return the materialized current state, or None for unknown orders."""
        return self.db.get(OrderState, (tenant_id, order_id))

    def history(self, tenant_id: str, order_id: str) -> list[OrderInternalEvent]:
        """Return the order's transition log, oldest first."""
        return (
            self.db.query(OrderInternalEvent)
            .filter(
                OrderInternalEvent.tenant_id == tenant_id,
                OrderInternalEvent.order_id == order_id,
            )
            .order_by(OrderInternalEvent.seq.asc())
            .all()
        )

    def recompute_state(self, tenant_id: str, order_id: str) -> str | None:
        """Derive the current state from the log alone."""
        latest = (
            self.db.query(OrderInternalEvent)
            .filter(
                OrderInternalEvent.tenant_id == tenant_id,
                OrderInternalEvent.order_id == order_id,
            )
            .order_by(OrderInternalEvent.seq.desc())
            .first()
        )
        return latest.to_state if latest else None

    def verify_consistency(self, tenant_id: str, order_id: str) -> ConsistencyReport:
        """Compare materialized state with the state recomputed from the log."""
        state = self.get_state(tenant_id, order_id)
        report = ConsistencyReport(
            order_id=order_id,
            materialized=state.state if state else None,
            recomputed=self.recompute_state(tenant_id, order_id),
            history_length=len(self.history(tenant_id, order_id)),
        )
        open_rows = self.sla.get_station_metrics(tenant_id, order_id=order_id)
        if len(open_rows) > 1:
            report.notes.append(f"{len(open_rows)} open station rows")
        if state and open_rows and open_rows[0].station != state.station:
            report.notes.append(
                f"open station row is {open_rows[0].station}, state station is {state.station}"
            )
        if not report.consistent:
            logger.warning(
                "order_state_drift tenant=%s order=%s materialized=%s recomputed=%s",
                tenant_id,
                order_id,
                report.materialized,
                report.recomputed,
            )
        return report

    def terminal_lock(self, tenant_id: str, order_id: str) -> InternalOrderState | None:
        """Return the latest terminal state recorded since the last reopen.

        None means the order is not locked.
        """
        for event in reversed(self.history(tenant_id, order_id)):
            if event.is_reopen:
                return None
            if is_terminal_state(event.to_state):
                return InternalOrderState(event.to_state)
        return None

    def describe(
        self, tenant_id: str, order_id: str, now: datetime | None = None
    ) -> dict[str, Any]:
        """Current state, station, open SLA row and history for one order.

        Raises:
            NotFoundError: If the order has no recorded state for this tenant.
        """
        state = self.get_state(tenant_id, order_id)
        if state is None:
            raise NotFoundError("Order", order_id)
        open_rows = self.sla.get_station_metrics(tenant_id, order_id=order_id, now=now)
        lock = self.terminal_lock(tenant_id, order_id)
        return {
            "order_id": order_id,
            "state": state.state,
            "station": state.station,
            "updated_at": state.updated_at,
            "is_terminal": is_terminal_state(state.state),
            "terminal_lock": lock.value if lock else None,
            "open_station": open_rows[0] if open_rows else None,
            "history": self.history(tenant_id, order_id),
        }

    # Writes

    def apply_transition(
        self,
        tenant_id: str,
        order_id: str,
        to_state: str | InternalOrderState,
        triggered_by: TriggeredBy = TriggeredBy.system,
        notes: str | None = None,
        shipment_event_id: str | None = None,
        now: datetime | None = None,
        workflow_name: str = WORKFLOW_ORDER_TRANSITION,
    ) -> TransitionResult:
        """Move an order to a new internal state.

        Steps: read the current state; same state is a no-op; reject a
        regression out of a terminal state; append the log entry; close
        and reopen station metrics when the station changes; update the
        materialized state; audit.

        Raises:
            TerminalStateRegression: If the order is terminal-locked and
                to_state is non-terminal and not a settlement follow-up, or
                an automated event names a terminal state the lock cannot
                move on to. Repeating the locking status is a no-op.
            ValueError: If to_state is not a known internal state.
        """
        now = now or datetime.now(UTC)
        target = coerce_state(to_state)
        target_station = station_for_state(target)
        current = self.get_state(tenant_id, order_id)
        from_state = current.state if current else None

        if from_state == target.value:
            return TransitionResult(
                order_id=order_id,
                from_state=from_state,
                to_state=target.value,
                station=target_station.value,
                changed=False,
            )

        lock = self.terminal_lock(tenant_id, order_id)
        if lock is not None and target == lock:
            # Repeat of the locking status after settlement moved past it.
            return TransitionResult(
                order_id=order_id,
                from_state=from_state,
                to_state=from_state or target.value,
                station=current.station if current else target_station.value,
                changed=False,
            )
        if lock is not None and self._is_regression(lock, target, triggered_by):
            raise TerminalStateRegression(order_id, from_state or lock.value, target.value)

        return self._record(
            tenant_id,
            order_id,
            current,
            target,
            target_station,
            triggered_by,
            notes,
            shipment_event_id,
            now,
            workflow_name,
            is_reopen=False,
        )

    def reopen(
        self,
        tenant_id: str,
        order_id: str,
        to_state: str | InternalOrderState,
        reason: str,
        triggered_by: TriggeredBy = TriggeredBy.user,
        now: datetime | None = None,
    ) -> TransitionResult:
        """Deliberately reopen a terminal-locked order.

        Raises:
            NotFoundError: If the order is unknown.
            InvalidTransition: If the order is not locked or the target is
                not a permitted reopen target.
        """
        now = now or datetime.now(UTC)
        target = coerce_state(to_state)
        current = self.get_state(tenant_id, order_id)
        if current is None:
            raise NotFoundError("Order", order_id)

        lock = self.terminal_lock(tenant_id, order_id)
        if lock is None or target not in REOPEN_TARGETS.get(lock, frozenset()):
            raise InvalidTransition(order_id, current.state, target.value)

        result = self._record(
            tenant_id,
            order_id,
            current,
            target,
            station_for_state(target),
            triggered_by,
            reason,
            None,
            now,
            WORKFLOW_ORDER_TRANSITION,
            is_reopen=True,
        )
        self.audit.log(
            tenant_id=tenant_id,
            event_type=AuditEventType.order_reopened,
            entity_type="order",
            entity_id=order_id,
            action="reopened",
            workflow_name=WORKFLOW_ORDER_TRANSITION,
            old_value={"state": current.state, "terminal_lock": lock.value},
            new_value={"state": target.value, "reason": reason},
        )
        return result

    @classmethod
    def _is_regression(
        cls, lock: InternalOrderState, target: InternalOrderState, triggered_by: TriggeredBy
    ) -> bool:
        if not is_terminal_state(target):
            return not cls._is_settlement(lock, target, triggered_by)
        # Operators may correct one terminal outcome into another.
        if TriggeredBy(triggered_by) != TriggeredBy.automation:
            return False
        return target not in TERMINAL_FOLLOW_UPS.get(lock, frozenset())

    @staticmethod
    def _is_settlement(
        lock: InternalOrderState, target: InternalOrderState, triggered_by: TriggeredBy
    ) -> bool:
        return (
            lock in SETTLEMENT_SOURCES
            and target in SETTLEMENT_STATES
            and TriggeredBy(triggered_by) in SETTLEMENT_ACTORS
        )

    def _next_seq(self, tenant_id: str, order_id: str) -> int:
        current_max = (
            self.db.query(func.max(OrderInternalEvent.seq))
            .filter(
                OrderInternalEvent.tenant_id == tenant_id,
                OrderInternalEvent.order_id == order_id,
            )
            .scalar()
        )
        return (current_max or 0) + 1

    def _record(
        self,
        tenant_id: str,
        order_id: str,
        current: OrderState | None,
        target: InternalOrderState,
        target_station: Station,
        triggered_by: TriggeredBy,
        notes: str | None,
        shipment_event_id: str | None,
        now: datetime,
        workflow_name: str,
        is_reopen: bool,
    ) -> TransitionResult:
        from_state = current.state if current else None
        event = OrderInternalEvent(
            tenant_id=tenant_id,
            order_id=order_id,
            seq=self._next_seq(tenant_id, order_id),
            from_state=from_state,
            to_state=target.value,
            station=target_station.value,
            triggered_by=TriggeredBy(triggered_by).value,
            is_reopen=is_reopen,
            notes=notes,
            shipment_event_id=shipment_event_id,
            occurred_at=to_iso(now),
        )
        self.db.add(event)

        station_changed = current is None or current.station != target_station.value
        if station_changed or self.sla.get_open_row(tenant_id, order_id) is None:
            self.sla.exit_open_stations(tenant_id, order_id, now)
            self.sla.enter_station(tenant_id, order_id, target_station, now)

        if current is None:
            current = OrderState(tenant_id=tenant_id, order_id=order_id)
            self.db.add(current)
        current.state = target.value
        current.station = target_station.value
        current.updated_at = to_iso(now)
        self.db.flush()

        self.audit.log_transition(
            tenant_id,
            order_id,
            from_state,
            target.value,
            target_station.value,
            workflow_name,
            TriggeredBy(triggered_by).value,
        )
        logger.info(
            "order_transition tenant=%s order=%s %s->%s station=%s station_changed=%s",
            tenant_id,
            order_id,
            from_state,
            target.value,
            target_station.value,
            station_changed,
        )
        return TransitionResult(
            order_id=order_id,
            from_state=from_state,
            to_state=target.value,
            station=target_station.value,
            changed=True,
            station_changed=station_changed,
            event_id=event.id,
        )
