"""Tests for station SLA tracking, breach evaluation and sweeps."""

import pytest

from src.db.models import AuditLog, Station
from src.services.order_state import OrderStateMachine
from src.services.sla_tracker import StationSlaTracker, is_sla_breached, minutes_between


@pytest.fixture
def tracker(db_session) -> StationSlaTracker:
    return StationSlaTracker(db_session)


class TestBreachPredicate:
    """Breach is a pure comparison of dwell time against target."""

    def test_breached_after_target(self, at) -> None:
        assert is_sla_breached(at(8), 60, now=at(10)) is True

    def test_not_breached_within_target(self, at) -> None:
        assert is_sla_breached(at(8), 60, now=at(8, 30)) is False

    def test_exactly_at_target_is_not_breached(self, at) -> None:
        assert is_sla_breached(at(8), 60, now=at(9)) is False

    def test_minutes_between(self, at) -> None:
        assert minutes_between(at(8), at(9, 30)) == 90.0
        assert minutes_between(at(9), at(8)) == -60.0


class TestEnterExit:
    """Open and close dwell rows."""

    def test_enter_uses_station_target(self, tracker, tenant_id, at, db_session) -> None:
        row = tracker.enter_station(tenant_id, "ORD-1", Station.finance, at(8))
        db_session.commit()
        assert row.sla_target_minutes == 1440
        assert tracker.get_open_row(tenant_id, "ORD-1").id == row.id

    def test_exit_records_duration(self, tracker, tenant_id, at, db_session) -> None:
        tracker.enter_station(tenant_id, "ORD-1", Station.call_center, at(8))
        db_session.flush()
        closed = tracker.exit_open_stations(tenant_id, "ORD-1", at(8, 45))
        db_session.commit()
        assert len(closed) == 1
        assert closed[0].duration_minutes == 45.0
        assert closed[0].sla_breached is False
        assert tracker.get_open_row(tenant_id, "ORD-1") is None


class TestStationMetrics:
    """Read model with breach computed against now."""

    @pytest.fixture
    def orders(self, db_session, tenant_id, at):
        machine = OrderStateMachine(db_session)
        machine.apply_transition(tenant_id, "ORD-1", "new", now=at(8))
        machine.apply_transition(tenant_id, "ORD-2", "new", now=at(9, 30))
        machine.apply_transition(tenant_id, "ORD-3", "operations_pending", now=at(7))
        db_session.commit()

    def test_open_rows_oldest_first(self, tracker, tenant_id, at, orders) -> None:
        views = tracker.get_station_metrics(tenant_id, now=at(10))
        assert [v.order_id for v in views] == ["ORD-3", "ORD-1", "ORD-2"]

    def test_breach_computed_on_read(self, tracker, tenant_id, at, orders) -> None:
        views = {v.order_id: v for v in tracker.get_station_metrics(tenant_id, now=at(10))}
        assert views["ORD-1"].breached is True
        assert views["ORD-1"].elapsed_minutes == 120.0
        assert views["ORD-1"].remaining_minutes == 0.0
        assert views["ORD-2"].breached is False
        assert views["ORD-2"].remaining_minutes == 30.0
        assert views["ORD-3"].breached is False

    def test_filter_by_station(self, tracker, tenant_id, at, orders) -> None:
        views = tracker.get_station_metrics(tenant_id, station="call_center", now=at(10))
        assert {v.order_id for v in views} == {"ORD-1", "ORD-2"}

    def test_breached_only(self, tracker, tenant_id, at, orders) -> None:
        views = tracker.get_station_metrics(tenant_id, breached_only=True, now=at(10))
        assert [v.order_id for v in views] == ["ORD-1"]

    def test_include_closed(self, tracker, tenant_id, at, orders, db_session) -> None:
        OrderStateMachine(db_session).apply_transition(
            tenant_id, "ORD-1", "operations_pending", now=at(10)
        )
        db_session.commit()
        open_views = tracker.get_station_metrics(tenant_id, order_id="ORD-1", now=at(11))
        all_views = tracker.get_station_metrics(
            tenant_id, order_id="ORD-1", include_closed=True, now=at(11)
        )
        assert len(open_views) == 1
        assert len(all_views) == 2
        closed = next(v for v in all_views if not v.is_open)
        assert closed.breached is True
        assert closed.elapsed_minutes == 120.0

    def test_other_tenant_sees_nothing(self, tracker, other_tenant_id, at, orders) -> None:
        assert tracker.get_station_metrics(other_tenant_id, now=at(10)) == []

    def test_summary(self, tracker, tenant_id, at, orders) -> None:
        summaries = {s.station: s for s in tracker.summarize(tenant_id, now=at(10))}
        assert set(summaries) == {s.value for s in Station}
        call_center = summaries["call_center"]
        assert call_center.open_count == 2
        assert call_center.breached_count == 1
        assert call_center.avg_wait_minutes == 75.0
        assert summaries["finance"].open_count == 0


class TestSweep:
    """Sweeps alert once per breached open row."""

    def test_sweep_alerts_once(self, tracker, tenant_id, at, db_session) -> None:
        machine = OrderStateMachine(db_session)
        machine.apply_transition(tenant_id, "ORD-1", "new", now=at(8))
        machine.apply_transition(tenant_id, "ORD-2", "new", now=at(9, 45))
        db_session.commit()

        alerted = tracker.sweep_breaches(tenant_id, now=at(10))
        assert [v.order_id for v in alerted] == ["ORD-1"]
        assert alerted[0].breach_alerted_at is not None

        assert tracker.sweep_breaches(tenant_id, now=at(10, 30)) == []
        later = tracker.sweep_breaches(tenant_id, now=at(11))
        assert [v.order_id for v in later] == ["ORD-2"]

        logs = db_session.query(AuditLog).filter(AuditLog.event_type == "sla_breached").all()
        assert sorted(log.entity_id for log in logs) == ["ORD-1", "ORD-2"]
        assert all(log.level == "WARNING" for log in logs)
