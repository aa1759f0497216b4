"""Shipment registry linking tracking numbers to orders.

Carrier events only carry a tracking number; this table tells the
ingestion pipeline which order an event belongs to, and its timestamps
feed courier analytics.
"""

import logging
from datetime import UTC, datetime

from sqlalchemy.orm import Session

from src.db.models import InternalOrderState, Shipment, TriggeredBy, to_iso
from src.errors import ConflictError, NotFoundError, ValidationError
from src.services.order_state import OrderStateMachine, TransitionResult

logger = logging.getLogger(__name__)


class ShipmentService:
    """Registers shipments and records settlement hooks.

    Attributes:
        db: SQLAlchemy session for database operations.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def register_shipment(
        self,
        tenant_id: str,
        order_id: str,
        tracking_number: str,
        courier: str,
        region: str | None = None,
        created_at: datetime | None = None,
        commit: bool = True,
    ) -> Shipment:
        """Register a tracking number against an order.

        Re-registering the same tracking number for the same order returns
        the existing row.

        Raises:
            ValidationError: If a required field is blank.
            ConflictError: If the tracking number belongs to another order.
        """
        tracking = (tracking_number or "").strip().upper()
        courier_code = (courier or "").strip().lower()
        if not tracking or not order_id or not courier_code:
            raise ValidationError("order_id, tracking_number and courier are required")

        existing = self.get_by_tracking(tenant_id, tracking)
        if existing is not None:
            if existing.order_id != order_id:
                raise ConflictError(
                    f"Tracking number '{tracking}' is already registered to order "
                    f"'{existing.order_id}'"
                )
            return existing

        shipment = Shipment(
            tenant_id=tenant_id,
            order_id=order_id,
            tracking_number=tracking,
            courier=courier_code,
            region=region,
            created_at=to_iso(created_at or datetime.now(UTC)),
        )
        self.db.add(shipment)
        if commit:
            self.db.commit()
            self.db.refresh(shipment)
        else:
            self.db.flush()
        logger.info(
            "shipment_registered tenant=%s order=%s tracking=%s courier=%s",
            tenant_id,
            order_id,
            tracking,
            courier_code,
        )
        return shipment

    def get_by_tracking(self, tenant_id: str, tracking_number: str) -> Shipment | None:
        """Look up a shipment by tracking number within a tenant."""
        return (
            self.db.query(Shipment)
            .filter(
                Shipment.tenant_id == tenant_id,
                Shipment.tracking_number == tracking_number.strip().upper(),
            )
            .first()
        )

    def list_for_order(self, tenant_id: str, order_id: str) -> list[Shipment]:
        """All shipments registered for an order."""
        return (
            self.db.query(Shipment)
            .filter(Shipment.tenant_id == tenant_id, Shipment.order_id == order_id)
            .order_by(Shipment.created_at.asc())
            .all()
        )

    def record_cod_remittance(
        self,
        tenant_id: str,
        tracking_number: str,
        remitted_at: datetime | None = None,
    ) -> TransitionResult:
        """Settlement hook: mark COD funds remitted and settle the order.

        Moves the order to finance_settled. Settlement rules themselves
        live outside this service.

        Raises:
            NotFoundError: If the tracking number is unknown for the tenant.
            TerminalStateRegression: If the order cannot be settled from its
                current state.
        """
        shipment = self.get_by_tracking(tenant_id, tracking_number)
        if shipment is None:
            raise NotFoundError("Shipment", tracking_number)

        remitted_at = remitted_at or datetime.now(UTC)
        shipment.cod_remitted_at = to_iso(remitted_at)
        result = OrderStateMachine(self.db).apply_transition(
            tenant_id,
            shipment.order_id,
            InternalOrderState.finance_settled,
            triggered_by=TriggeredBy.system,
            notes=f"COD remitted for {shipment.tracking_number}",
            now=remitted_at,
        )
        self.db.commit()
        return result
