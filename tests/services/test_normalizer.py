"""Tests for multi-channel normalization of raw carrier updates."""

import json
from datetime import UTC, datetime

from src.db.models import IngestionMode
from src.services.normalizer import (
    CanonicalShipmentEvent,
    normalize_api_payload,
    normalize_email,
    normalize_manual,
    parse_csv_batch,
    parse_email,
    parse_timestamp,
)

TENANT = "acme"


class TestApiPayload:
    """Webhook bodies in object, list, envelope and string form."""

    def test_single_object(self) -> None:
        events = normalize_api_payload(
            TENANT,
            {
                "trackingNumber": "awb100",
                "carrier": "Aramex",
                "status": "SHP",
                "timestamp": "2026-03-15T10:00:00Z",
                "city": "Riyadh",
            },
        )
        assert len(events) == 1
        event = events[0]
        assert event.tracking_number == "AWB100"
        assert event.provider == "aramex"
        assert event.provider_status == "SHP"
        assert event.location == "Riyadh"
        assert event.occurred_at == datetime(2026, 3, 15, 10, 0, tzinfo=UTC)
        assert event.ingestion_mode == IngestionMode.api

    def test_envelope_fields_apply_to_every_event(self) -> None:
        body = {
            "provider": "smsa",
            "events": [
                {"awb": "S1", "status": "Shipped"},
                {"awb": "S2", "status": "Delivered"},
            ],
        }
        events = normalize_api_payload(TENANT, body)
        assert [e.tracking_number for e in events] == ["S1", "S2"]
        assert {e.provider for e in events} == {"smsa"}

    def test_json_string_body(self) -> None:
        body = json.dumps({"tracking_number": "AWB1", "status": "delivered"})
        events = normalize_api_payload(TENANT, body)
        assert events[0].provider_status == "delivered"

    def test_unparseable_body_yields_nothing(self) -> None:
        assert normalize_api_payload(TENANT, "{not json") == []
        assert normalize_api_payload(TENANT, 42) == []

    def test_items_without_tracking_are_dropped(self) -> None:
        events = normalize_api_payload(
            TENANT, [{"status": "delivered"}, {"tracking_number": "AWB2", "status": "x"}, "junk"]
        )
        assert [e.tracking_number for e in events] == ["AWB2"]

    def test_missing_status_becomes_unknown(self) -> None:
        events = normalize_api_payload(TENANT, {"tracking_number": "AWB1"}, "jnt")
        assert events[0].provider_status == "unknown"
        assert events[0].provider == "jnt"

    def test_raw_data_keeps_original_item(self) -> None:
        item = {"Tracking-Number": "AWB1", "Status": "delivered"}
        events = normalize_api_payload(TENANT, item)
        assert events[0].raw_data == item


class TestCsvBatch:
    """CSV exports with aliased headers."""

    def test_rows_without_tracking_are_dropped(self) -> None:
        csv_text = "tracking_number,status\nAWB123,delivered\n,missing\nAWB456,in_transit"
        events = parse_csv_batch(TENANT, csv_text)
        assert [(e.tracking_number, e.provider_status) for e in events] == [
            ("AWB123", "delivered"),
            ("AWB456", "in_transit"),
        ]
        assert [e.source_row for e in events] == [1, 3]
        assert all(e.ingestion_mode == IngestionMode.csv for e in events)

    def test_awb_column_stands_in_for_tracking(self) -> None:
        events = parse_csv_batch(TENANT, "AWB,Status,Courier\nx1,DEL,ARAMEX\n")
        assert events[0].tracking_number == "X1"
        assert events[0].provider == "aramex"

    def test_awb_not_used_when_tracking_column_present(self) -> None:
        csv_text = "tracking_number,awb,status\nT1,A1,delivered\n,A2,in_transit\n"
        events = parse_csv_batch(TENANT, csv_text)
        assert [e.tracking_number for e in events] == ["T1"]

    def test_default_provider_applies(self) -> None:
        events = parse_csv_batch(TENANT, "tracking_number,status\nA1,delivered\n", "smsa")
        assert events[0].provider == "smsa"

    def test_no_tracking_column_yields_nothing(self) -> None:
        assert parse_csv_batch(TENANT, "order,status\n1,delivered\n") == []

    def test_empty_input_yields_nothing(self) -> None:
        assert parse_csv_batch(TENANT, "") == []
        assert parse_csv_batch(TENANT, "   \n") == []

    def test_blank_lines_are_skipped(self) -> None:
        events = parse_csv_batch(TENANT, "tracking_number,status\n\nA1,delivered\n,\n")
        assert len(events) == 1

    def test_bom_is_ignored(self) -> None:
        events = parse_csv_batch(TENANT, "\ufefftracking_number,status\nA1,delivered\n")
        assert events[0].tracking_number == "A1"

    def test_order_and_region_columns(self) -> None:
        events = parse_csv_batch(
            TENANT, "tracking_number,status,order_id,region\nA1,SHP,ORD-9,central\n"
        )
        assert events[0].order_id == "ORD-9"
        assert events[0].region == "central"


class TestEmail:
    """Free-form carrier notification text."""

    def test_delivered_email(self) -> None:
        extraction = parse_email("Your shipment AWB123456789 has been delivered.")
        assert extraction.tracking_number == "AWB123456789"
        assert extraction.status == "delivered"

    def test_no_tracking_reference(self) -> None:
        extraction = parse_email("Hello, your parcel is on its way.")
        assert extraction.tracking_number is None
        assert extraction.tracking_numbers == []
        assert extraction.status is None

    def test_status_phrases(self) -> None:
        assert parse_email("AWB123456 is in transit").status == "in_transit"
        assert parse_email("AWB123456 is out for delivery").status == "out_for_delivery"
        assert parse_email("AWB123456 was picked up").status == "picked_up"
        assert parse_email("AWB123456 was returned").status == "returned"

    def test_first_reference_is_primary(self) -> None:
        events = normalize_email(
            TENANT, "Shipments SMSA1234567 and JNT7654321 were delivered", "smsa"
        )
        assert [e.tracking_number for e in events] == ["SMSA1234567", "JNT7654321"]
        assert [e.is_primary for e in events] == [True, False]
        assert all(e.provider == "smsa" for e in events)

    def test_repeated_reference_counts_once(self) -> None:
        events = normalize_email(TENANT, "AWB123456 delivered. Ref: awb123456")
        assert len(events) == 1

    def test_unknown_status_kept_for_triage(self) -> None:
        events = normalize_email(TENANT, "AWB123456 update attached")
        assert events[0].provider_status == "unknown"

    def test_description_is_truncated(self) -> None:
        body = "AWB123456 delivered " + "x" * 500
        events = normalize_email(TENANT, body, excerpt_chars=50)
        assert len(events[0].description) == 50


class TestManual:
    """Operator-entered updates."""

    def test_manual_entry(self) -> None:
        events = normalize_manual(
            TENANT, {"tracking_number": "awb1", "status": "delivered", "note": "left at door"}
        )
        assert events[0].tracking_number == "AWB1"
        assert events[0].description == "left at door"
        assert events[0].ingestion_mode == IngestionMode.manual

    def test_manual_without_tracking(self) -> None:
        assert normalize_manual(TENANT, {"status": "delivered"}) == []

    def test_manual_non_dict(self) -> None:
        assert normalize_manual(TENANT, ["AWB1"]) == []


class TestTimestamps:
    """Carrier timestamps in assorted formats."""

    def test_iso_with_offset_is_converted_to_utc(self) -> None:
        parsed = parse_timestamp("2026-03-15T13:00:00+03:00")
        assert parsed == datetime(2026, 3, 15, 10, 0, tzinfo=UTC)

    def test_naive_is_assumed_utc(self) -> None:
        assert parse_timestamp("2026-03-15 10:00").tzinfo is not None

    def test_epoch_seconds_and_millis(self) -> None:
        expected = datetime(2026, 3, 15, 10, 0, tzinfo=UTC)
        seconds = int(expected.timestamp())
        assert parse_timestamp(seconds) == expected
        assert parse_timestamp(seconds * 1000) == expected

    def test_garbage_is_none(self) -> None:
        assert parse_timestamp("not a date") is None
        assert parse_timestamp("") is None
        assert parse_timestamp(None) is None
        assert parse_timestamp(True) is None


class TestCanonicalEvent:
    """Idempotency payload and dead-letter snapshots."""

    def _event(self, **overrides) -> CanonicalShipmentEvent:
        fields = {
            "tenant_id": TENANT,
            "tracking_number": "AWB1",
            "provider": "aramex",
            "provider_status": "Out for Delivery",
            "ingestion_mode": IngestionMode.api,
            "occurred_at": datetime(2026, 3, 15, 10, 0, tzinfo=UTC),
        }
        fields.update(overrides)
        return CanonicalShipmentEvent(**fields)

    def test_payload_ignores_channel_and_description(self) -> None:
        api = self._event(description="webhook")
        csv_event = self._event(ingestion_mode=IngestionMode.csv, description="export")
        assert api.idempotency_payload() == csv_event.idempotency_payload()

    def test_payload_normalizes_status(self) -> None:
        assert self._event().idempotency_payload()["provider_status"] == "out_for_delivery"

    def test_trigger_data_rebuilds_event(self) -> None:
        event = self._event(region="north", order_id="ORD-1", is_primary=False)
        rebuilt = CanonicalShipmentEvent.from_trigger_data(
            json.loads(json.dumps(event.to_trigger_data()))
        )
        assert rebuilt.idempotency_payload() == event.idempotency_payload()
        assert rebuilt.region == "north"
        assert rebuilt.order_id == "ORD-1"
        assert rebuilt.is_primary is False
