"""Tests for the shipment registry and settlement hook."""

import pytest

from src.errors import ConflictError, NotFoundError, TerminalStateRegression, ValidationError
from src.services.order_state import OrderStateMachine
from src.services.shipment_service import ShipmentService


@pytest.fixture
def service(db_session) -> ShipmentService:
    return ShipmentService(db_session)


class TestRegister:
    """Tracking numbers are unique per tenant."""

    def test_register_normalizes_fields(self, service, tenant_id) -> None:
        shipment = service.register_shipment(tenant_id, "ORD-1", " awb1 ", "Aramex")
        assert shipment.tracking_number == "AWB1"
        assert shipment.courier == "aramex"
        assert service.get_by_tracking(tenant_id, "awb1").id == shipment.id

    def test_reregister_same_order_returns_existing(self, service, tenant_id) -> None:
        first = service.register_shipment(tenant_id, "ORD-1", "AWB1", "aramex")
        second = service.register_shipment(tenant_id, "ORD-1", "AWB1", "aramex")
        assert first.id == second.id

    def test_tracking_number_owned_by_other_order(self, service, tenant_id) -> None:
        service.register_shipment(tenant_id, "ORD-1", "AWB1", "aramex")
        with pytest.raises(ConflictError):
            service.register_shipment(tenant_id, "ORD-2", "AWB1", "aramex")

    def test_same_tracking_in_other_tenant(self, service, tenant_id, other_tenant_id) -> None:
        service.register_shipment(tenant_id, "ORD-1", "AWB1", "aramex")
        other = service.register_shipment(other_tenant_id, "ORD-9", "AWB1", "smsa")
        assert other.order_id == "ORD-9"
        assert service.get_by_tracking(other_tenant_id, "AWB1").courier == "smsa"

    def test_blank_fields_rejected(self, service, tenant_id) -> None:
        with pytest.raises(ValidationError):
            service.register_shipment(tenant_id, "ORD-1", "  ", "aramex")
        with pytest.raises(ValidationError):
            service.register_shipment(tenant_id, "", "AWB1", "aramex")

    def test_list_for_order(self, service, tenant_id, at) -> None:
        service.register_shipment(tenant_id, "ORD-1", "AWB2", "aramex", created_at=at(10))
        service.register_shipment(tenant_id, "ORD-1", "AWB1", "aramex", created_at=at(9))
        service.register_shipment(tenant_id, "ORD-2", "AWB3", "aramex")
        assert [s.tracking_number for s in service.list_for_order(tenant_id, "ORD-1")] == [
            "AWB1",
            "AWB2",
        ]


class TestCodRemittance:
    """Settlement hook moves a delivered order to finance_settled."""

    def test_settles_delivered_order(self, service, tenant_id, at, db_session) -> None:
        service.register_shipment(tenant_id, "ORD-1", "AWB1", "aramex")
        machine = OrderStateMachine(db_session)
        machine.apply_transition(tenant_id, "ORD-1", "delivered", now=at(9))
        db_session.commit()

        result = service.record_cod_remittance(tenant_id, "AWB1", remitted_at=at(12))

        assert result.to_state == "finance_settled"
        assert machine.get_state(tenant_id, "ORD-1").state == "finance_settled"
        assert service.get_by_tracking(tenant_id, "AWB1").cod_remitted_at.startswith(
            "2026-03-15T12:00"
        )

    def test_unknown_tracking(self, service, tenant_id) -> None:
        with pytest.raises(NotFoundError):
            service.record_cod_remittance(tenant_id, "NOPE")

    def test_cancelled_order_cannot_settle(self, service, tenant_id, at, db_session) -> None:
        service.register_shipment(tenant_id, "ORD-1", "AWB1", "aramex")
        OrderStateMachine(db_session).apply_transition(tenant_id, "ORD-1", "cancelled", now=at(9))
        db_session.commit()
        with pytest.raises(TerminalStateRegression):
            service.record_cod_remittance(tenant_id, "AWB1", remitted_at=at(12))
