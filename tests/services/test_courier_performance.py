"""Tests for daily courier performance aggregation."""

from datetime import date, timedelta

import pytest

from src.db.models import CourierPerformanceDaily
from src.services.courier_performance import (
    CourierPerformanceService,
    build_recommendations,
    composite_score,
    delivery_rate,
    recommendations_of,
    return_rate,
)

REPORT_DATE = date(2026, 3, 16)


class TestRates:
    """Rates are shares of total shipments, 0 when there are none."""

    def test_zero_total_gives_zero_rates(self) -> None:
        assert delivery_rate(0, 0) == 0.0
        assert return_rate(0, 5) == 0.0

    def test_rates_are_bounded(self) -> None:
        assert delivery_rate(4, 3) == 0.75
        assert delivery_rate(2, 5) == 1.0
        assert return_rate(4, 1) == 0.25


class TestScore:
    """Composite score is an integer in [0, 100]."""

    def test_baseline(self) -> None:
        assert composite_score(0.0, 0.0, 0.0, 0.0) == 50

    def test_perfect_courier(self) -> None:
        assert composite_score(1.0, 0.0, 1.0, 0.0) == 85

    def test_worst_courier(self) -> None:
        assert composite_score(0.0, 1.0, 0.0, 48.0) == 25

    def test_rounds_half_up(self) -> None:
        # 50 + 20 * 0.025 = 50.5
        assert composite_score(0.025, 0.0, 0.0, 0.0) == 51

    @pytest.mark.parametrize(
        "args",
        [(1.0, 0.0, 1.0, -5.0), (0.0, 1.0, 0.0, 1000.0), (0.5, 0.5, 0.5, 12.0)],
    )
    def test_score_is_int_in_range(self, args) -> None:
        score = composite_score(*args)
        assert isinstance(score, int)
        assert 0 <= score <= 100


class TestRecommendations:
    """Guidance strings follow fixed thresholds."""

    def test_excellent_courier(self) -> None:
        assert build_recommendations(0.95, 0.05, 4.0, 24.0) == [
            "Excellent performance - consider as primary carrier"
        ]

    def test_high_returns_and_slow_pickup(self) -> None:
        recs = build_recommendations(0.6, 0.3, 30.0, 24.0)
        assert "High return rate - investigate delivery quality" in recs
        assert "Slow pickup times - consider for non-urgent orders only" in recs

    def test_slow_cod(self) -> None:
        assert build_recommendations(0.8, 0.1, 4.0, 200.0) == [
            "Slow COD remittance - monitor cash flow impact"
        ]

    def test_nothing_to_say(self) -> None:
        assert build_recommendations(0.8, 0.1, 4.0, 24.0) == []


class TestComputeDaily:
    """Aggregation over the trailing window, upserted per bucket."""

    @pytest.fixture
    def service(self, db_session) -> CourierPerformanceService:
        return CourierPerformanceService(db_session)

    @pytest.fixture
    def shipments(self, db_session, register_shipment, at):
        delivered = register_shipment("AWB1", "ORD-1", "aramex", created_at=at(8))
        delivered.picked_up_at = at(10).isoformat()
        delivered.delivered_at = at(8, day=16).isoformat()
        delivered.internal_status = "delivered"

        returned = register_shipment("AWB2", "ORD-2", "aramex", created_at=at(8))
        returned.picked_up_at = at(14).isoformat()
        returned.returned_at = at(8, day=16).isoformat()
        returned.internal_status = "return_received"

        register_shipment("AWB3", "ORD-3", "smsa", region="north", created_at=at(9))
        # Outside a one-day window ending on REPORT_DATE
        register_shipment("AWB4", "ORD-4", "aramex", created_at=at(9, day=1))
        db_session.commit()

    def test_buckets_by_courier_and_region(self, service, tenant_id, shipments) -> None:
        summaries = service.compute_daily(tenant_id, REPORT_DATE, window_days=2)
        assert [(s.courier, s.region) for s in summaries] == [
            ("aramex", "all"),
            ("smsa", "north"),
        ]

    def test_aramex_metrics(self, service, tenant_id, shipments) -> None:
        aramex = service.compute_daily(tenant_id, REPORT_DATE, window_days=2)[0]
        assert aramex.total_shipments == 2
        assert aramex.delivered_count == 1
        assert aramex.returned_count == 1
        assert aramex.delivery_rate == 0.5
        assert aramex.return_rate == 0.5
        assert aramex.avg_pickup_hours == 4.0
        assert aramex.avg_delivery_hours == 24.0
        assert aramex.avg_return_cycle_hours == 24.0
        assert aramex.on_time_rate == 1.0
        assert aramex.score == composite_score(0.5, 0.5, 1.0, 4.0)
        assert "High return rate - investigate delivery quality" in aramex.recommendations

    def test_courier_with_no_milestones(self, service, tenant_id, shipments) -> None:
        smsa = service.compute_daily(tenant_id, REPORT_DATE, window_days=2)[1]
        assert smsa.delivery_rate == 0.0
        assert smsa.on_time_rate == 0.0
        assert smsa.avg_pickup_hours == 0.0

    def test_wider_window_includes_older_shipments(self, service, tenant_id, shipments) -> None:
        aramex = service.compute_daily(tenant_id, REPORT_DATE, window_days=30)[0]
        assert aramex.total_shipments == 3

    def test_recompute_overwrites_rows(
        self, service, tenant_id, shipments, register_shipment, at, db_session
    ) -> None:
        service.compute_daily(tenant_id, REPORT_DATE, window_days=2)
        register_shipment("AWB5", "ORD-5", "aramex", created_at=at(11))
        service.compute_daily(tenant_id, REPORT_DATE, window_days=2)

        rows = db_session.query(CourierPerformanceDaily).filter_by(courier="aramex").all()
        assert len(rows) == 1
        assert rows[0].total_shipments == 3
        assert rows[0].date == "2026-03-16"

    def test_query_filters(self, service, tenant_id, shipments) -> None:
        service.compute_daily(tenant_id, REPORT_DATE, window_days=2)
        service.compute_daily(tenant_id, REPORT_DATE - timedelta(days=1), window_days=2)

        assert len(service.get_courier_performance(tenant_id)) == 4
        smsa = service.get_courier_performance(tenant_id, courier="SMSA")
        assert {r.courier for r in smsa} == {"smsa"}
        latest = service.get_courier_performance(tenant_id, date_from=REPORT_DATE)
        assert {r.date for r in latest} == {"2026-03-16"}
        north = service.get_courier_performance(tenant_id, region="north")
        assert all(r.region == "north" for r in north)

    def test_results_are_tenant_scoped(
        self, service, tenant_id, other_tenant_id, shipments
    ) -> None:
        service.compute_daily(tenant_id, REPORT_DATE, window_days=2)
        assert service.compute_daily(other_tenant_id, REPORT_DATE, window_days=2) == []
        assert service.get_courier_performance(other_tenant_id) == []

    def test_recommendations_round_trip(self, service, tenant_id, shipments) -> None:
        service.compute_daily(tenant_id, REPORT_DATE, window_days=2)
        row = service.get_courier_performance(tenant_id, courier="aramex")[0]
        assert "High return rate - investigate delivery quality" in recommendations_of(row)


class TestRecommendCourier:
    """Routing recommendation from stored daily rows."""

    @pytest.fixture
    def service(self, db_session) -> CourierPerformanceService:
        return CourierPerformanceService(db_session)

    def test_best_score_first_using_latest_rows(
        self, service, tenant_id, db_session, register_shipment, at
    ) -> None:
        delivered = register_shipment("AWB1", "ORD-1", "aramex", region="west", created_at=at(8))
        delivered.picked_up_at = at(10).isoformat()
        delivered.delivered_at = at(20).isoformat()
        delivered.internal_status = "delivered"
        register_shipment("AWB2", "ORD-2", "smsa", region="west", created_at=at(9))
        db_session.commit()
        service.compute_daily(tenant_id, REPORT_DATE - timedelta(days=1), window_days=2)
        service.compute_daily(tenant_id, REPORT_DATE, window_days=2)

        ranking = service.recommend_courier(tenant_id, region="west")

        assert [(r.rank, r.courier) for r in ranking] == [(1, "aramex"), (2, "smsa")]
        assert all(r.date == REPORT_DATE.isoformat() for r in ranking)
        assert ranking[0].score > ranking[1].score

    def test_volume_breaks_score_ties(
        self, service, tenant_id, db_session, register_shipment, at
    ) -> None:
        register_shipment("AWB1", "ORD-1", "smsa", region="east", created_at=at(8))
        register_shipment("AWB2", "ORD-2", "jnt", region="east", created_at=at(8))
        register_shipment("AWB3", "ORD-3", "jnt", region="east", created_at=at(9))
        db_session.commit()
        service.compute_daily(tenant_id, REPORT_DATE, window_days=2)

        ranking = service.recommend_courier(tenant_id, region="east")

        assert [r.courier for r in ranking] == ["jnt", "smsa"]
        assert ranking[0].score == ranking[1].score
        assert ranking[0].total_shipments == 2

    def test_unknown_region_and_other_tenant_are_empty(
        self, service, tenant_id, other_tenant_id, db_session, register_shipment, at
    ) -> None:
        register_shipment("AWB1", "ORD-1", "smsa", region="east", created_at=at(8))
        db_session.commit()
        service.compute_daily(tenant_id, REPORT_DATE, window_days=2)

        assert service.recommend_courier(tenant_id, region="north") == []
        assert service.recommend_courier(other_tenant_id, region="east") == []
