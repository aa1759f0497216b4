"""Multi-channel normalization of raw carrier updates.

Converts API webhook bodies, CSV exports, free-form email text and
manual entries into CanonicalShipmentEvent objects. All functions here
are pure and never raise: malformed input yields an empty (or partial)
list, and downstream stages must tolerate zero events from a batch.
"""

import csv
import io
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from dateutil.parser import ParserError, parse

from src.db.models import IngestionMode, to_iso
from src.services.status_mapping import normalize_status

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "unknown"
UNRESOLVED_STATUS = "unknown"
DEFAULT_EMAIL_EXCERPT_CHARS = 200

# Carrier-style alphanumeric prefix followed by at least six digits
TRACKING_PATTERN = re.compile(r"\b[A-Z]{2,5}\d{6,}\b", re.IGNORECASE)

# Ordered phrase rules; first match wins
EMAIL_STATUS_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\bdelivered\b", re.IGNORECASE), "delivered"),
    (re.compile(r"\bin\s+transit\b", re.IGNORECASE), "in_transit"),
    (re.compile(r"\bout\s+for\s+delivery\b", re.IGNORECASE), "out_for_delivery"),
    (re.compile(r"\bpicked\s+up\b", re.IGNORECASE), "picked_up"),
    (re.compile(r"\breturned\b", re.IGNORECASE), "returned"),
    (re.compile(r"\bfailed\s+delivery\b", re.IGNORECASE), "delivery_failed"),
)

# Accepted aliases per canonical field, checked in order
TRACKING_ALIASES = ("tracking_number", "trackingnumber", "tracking", "awb", "waybill")
PROVIDER_ALIASES = ("provider", "carrier", "courier")
STATUS_ALIASES = ("provider_status", "status", "event_status", "state")
OCCURRED_AT_ALIASES = ("occurred_at", "occurredat", "timestamp", "event_time", "date", "time")
LOCATION_ALIASES = ("location", "city")
DESCRIPTION_ALIASES = ("description", "remarks", "remark", "note", "notes")
ORDER_ALIASES = ("order_id", "orderid", "order")
REGION_ALIASES = ("region",)


@dataclass
class CanonicalShipmentEvent:
    """Channel-independent shipment update.

    Attributes:
        tracking_number: Carrier tracking reference; None when an email had none.
        provider: Lowercased carrier code.
        provider_status: Carrier status text as received.
        ingestion_mode: Channel the update arrived through.
        occurred_at: Carrier event time, if the payload carried one.
        is_primary: False for secondary references found in one email.
        order_id: Optional order reference carried by the payload.
        source_row: 1-based data row number for CSV input.
    """

    tenant_id: str
    tracking_number: str | None
    provider: str
    provider_status: str
    ingestion_mode: IngestionMode
    occurred_at: datetime | None = None
    location: str | None = None
    description: str | None = None
    is_primary: bool = True
    order_id: str | None = None
    region: str | None = None
    source_row: int | None = None
    raw_data: dict[str, Any] | None = field(default=None, repr=False)

    def idempotency_payload(self) -> dict[str, Any]:
        """Fields that identify the logical carrier event.

        Excludes the channel and free text, so the same update delivered
        by webhook and again in a CSV export deduplicates.
        """
        return {
            "tracking_number": self.tracking_number,
            "provider": self.provider,
            "provider_status": normalize_status(self.provider_status),
            "occurred_at": to_iso(self.occurred_at) if self.occurred_at else None,
            "location": self.location,
        }

    def to_trigger_data(self) -> dict[str, Any]:
        """JSON-safe snapshot for dead-letter replay."""
        return {
            "tenant_id": self.tenant_id,
            "tracking_number": self.tracking_number,
            "provider": self.provider,
            "provider_status": self.provider_status,
            "ingestion_mode": self.ingestion_mode.value,
            "occurred_at": to_iso(self.occurred_at) if self.occurred_at else None,
            "location": self.location,
            "description": self.description,
            "is_primary": self.is_primary,
            "order_id": self.order_id,
            "region": self.region,
            "raw_data": self.raw_data,
        }

    @classmethod
    def from_trigger_data(cls, data: dict[str, Any]) -> "CanonicalShipmentEvent":
        """Rebuild an event captured by to_trigger_data()."""
        occurred_at = data.get("occurred_at")
        return cls(
            tenant_id=data["tenant_id"],
            tracking_number=data.get("tracking_number"),
            provider=data.get("provider") or DEFAULT_PROVIDER,
            provider_status=data.get("provider_status") or UNRESOLVED_STATUS,
            ingestion_mode=IngestionMode(data.get("ingestion_mode", "api")),
            occurred_at=parse_timestamp(occurred_at),
            location=data.get("location"),
            description=data.get("description"),
            is_primary=bool(data.get("is_primary", True)),
            order_id=data.get("order_id"),
            region=data.get("region"),
            raw_data=data.get("raw_data"),
        )


@dataclass
class EmailExtraction:
    """What could be read out of an email body."""

    tracking_number: str | None
    tracking_numbers: list[str]
    status: str | None
    description: str


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a carrier timestamp into an aware UTC datetime.

    Accepts datetimes, ISO strings and the looser formats dateutil
    understands. Epoch seconds/milliseconds are accepted as numbers.
    Returns None for anything unparseable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000 if value > 1e11 else value
        try:
            parsed = datetime.fromtimestamp(seconds, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        try:
            parsed = parse(value.strip())
        except (ParserError, ValueError, OverflowError):
            logger.debug("timestamp_unparseable value=%r", value)
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _normalize_key(key: Any) -> str:
    return str(key).strip().lower().replace("-", "_").replace(" ", "_")


def _pick(record: dict[str, Any], aliases: tuple[str, ...]) -> Any:
    """Return the first non-empty value among the aliased keys."""
    for alias in aliases:
        value = record.get(alias)
        if value not in (None, ""):
            return value
    return None


def _event_from_record(
    tenant_id: str,
    record: dict[str, Any],
    mode: IngestionMode,
    default_provider: str,
    source_row: int | None = None,
) -> CanonicalShipmentEvent | None:
    """Build one event from a flat record with normalized keys."""
    tracking_number = _clean(_pick(record, TRACKING_ALIASES))
    if tracking_number is None:
        return None
    provider = (_clean(_pick(record, PROVIDER_ALIASES)) or default_provider).lower()
    provider_status = _clean(_pick(record, STATUS_ALIASES)) or UNRESOLVED_STATUS
    return CanonicalShipmentEvent(
        tenant_id=tenant_id,
        tracking_number=tracking_number.upper(),
        provider=provider,
        provider_status=provider_status,
        ingestion_mode=mode,
        occurred_at=parse_timestamp(_pick(record, OCCURRED_AT_ALIASES)),
        location=_clean(_pick(record, LOCATION_ALIASES)),
        description=_clean(_pick(record, DESCRIPTION_ALIASES)),
        order_id=_clean(_pick(record, ORDER_ALIASES)),
        region=_clean(_pick(record, REGION_ALIASES)),
        source_row=source_row,
    )


def normalize_api_payload(
    tenant_id: str,
    body: Any,
    default_provider: str = DEFAULT_PROVIDER,
) -> list[CanonicalShipmentEvent]:
    """Normalize a carrier webhook body.

    Accepts a JSON object, a JSON string, a list of objects, or an
    envelope of the form {"events": [...]} where envelope-level fields
    (e.g. provider) apply to every event.
    """
    if isinstance(body, (str, bytes)):
        try:
            body = json.loads(body)
        except (TypeError, ValueError):
            logger.info("api_payload_unparseable tenant=%s", tenant_id)
            return []

    envelope: dict[str, Any] = {}
    if isinstance(body, dict) and isinstance(body.get("events"), list):
        envelope = {
            _normalize_key(k): v for k, v in body.items() if k != "events"
        }
        items = body["events"]
    elif isinstance(body, dict):
        items = [body]
    elif isinstance(body, list):
        items = body
    else:
        return []

    events: list[CanonicalShipmentEvent] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        record = {**envelope, **{_normalize_key(k): v for k, v in item.items()}}
        event = _event_from_record(tenant_id, record, IngestionMode.api, default_provider)
        if event is None:
            logger.debug("api_event_dropped reason=no_tracking tenant=%s", tenant_id)
            continue
        event.raw_data = item
        events.append(event)
    return events


def parse_csv_batch(
    tenant_id: str,
    csv_text: str,
    default_provider: str = DEFAULT_PROVIDER,
) -> list[CanonicalShipmentEvent]:
    """Parse a carrier CSV export into events.

    Headers are matched case-insensitively. An "awb" or "waybill"
    column stands in for tracking_number when that column is absent.
    Rows without a tracking number are dropped; a file without any
    tracking column yields no events.
    """
    if not csv_text or not csv_text.strip():
        return []

    reader = csv.reader(io.StringIO(csv_text.lstrip("\ufeff")))
    try:
        header = next(reader)
    except (StopIteration, csv.Error):
        return []

    columns = [_normalize_key(name) for name in header]
    if not any(alias in columns for alias in TRACKING_ALIASES):
        logger.info(
            "csv_batch_rejected reason=no_tracking_column tenant=%s columns=%s",
            tenant_id,
            columns,
        )
        return []

    # Aliases resolve per header: the highest-priority tracking column wins
    # for every row, even where its cell is blank.
    tracking_column = next(alias for alias in TRACKING_ALIASES if alias in columns)
    shadowed = {alias for alias in TRACKING_ALIASES if alias != tracking_column}

    events: list[CanonicalShipmentEvent] = []
    dropped = 0
    row_number = 0
    try:
        for row_number, values in enumerate(reader, start=1):
            if not any(v.strip() for v in values):
                continue
            record = dict(zip(columns, values))
            fields = {k: v for k, v in record.items() if k not in shadowed}
            event = _event_from_record(
                tenant_id, fields, IngestionMode.csv, default_provider, row_number
            )
            if event is None:
                dropped += 1
                continue
            event.raw_data = {k: v for k, v in record.items() if k}
            events.append(event)
    except csv.Error as e:
        logger.info(
            "csv_batch_truncated tenant=%s row=%d error=%s", tenant_id, row_number, e
        )

    logger.info(
        "csv_batch_parsed tenant=%s events=%d dropped=%d",
        tenant_id,
        len(events),
        dropped,
    )
    return events


def parse_email(
    email_body: str, excerpt_chars: int = DEFAULT_EMAIL_EXCERPT_CHARS
) -> EmailExtraction:
    """Extract tracking references and a status from email text.

    The first tracking reference found is the primary one. Status is
    None when no phrase rule matched.
    """
    body = email_body or ""
    tracking_numbers: list[str] = []
    for match in TRACKING_PATTERN.finditer(body):
        reference = match.group(0).upper()
        if reference not in tracking_numbers:
            tracking_numbers.append(reference)

    status = None
    for pattern, candidate in EMAIL_STATUS_RULES:
        if pattern.search(body):
            status = candidate
            break

    return EmailExtraction(
        tracking_number=tracking_numbers[0] if tracking_numbers else None,
        tracking_numbers=tracking_numbers,
        status=status,
        description=body.strip()[:excerpt_chars],
    )


def normalize_email(
    tenant_id: str,
    email_body: str,
    provider: str | None = None,
    excerpt_chars: int = DEFAULT_EMAIL_EXCERPT_CHARS,
) -> list[CanonicalShipmentEvent]:
    """Build one event per tracking reference found in an email.

    A body without a recognizable status still yields events, with
    provider_status "unknown", for manual triage.
    """
    extraction = parse_email(email_body, excerpt_chars)
    provider_code = (provider or DEFAULT_PROVIDER).strip().lower() or DEFAULT_PROVIDER
    return [
        CanonicalShipmentEvent(
            tenant_id=tenant_id,
            tracking_number=reference,
            provider=provider_code,
            provider_status=extraction.status or UNRESOLVED_STATUS,
            ingestion_mode=IngestionMode.email,
            description=extraction.description or None,
            is_primary=index == 0,
        )
        for index, reference in enumerate(extraction.tracking_numbers)
    ]


def normalize_manual(
    tenant_id: str,
    entry: dict[str, Any],
    default_provider: str = DEFAULT_PROVIDER,
) -> list[CanonicalShipmentEvent]:
    """Normalize an operator's manual entry {tracking_number, status, note}."""
    if not isinstance(entry, dict):
        return []
    record = {_normalize_key(k): v for k, v in entry.items()}
    event = _event_from_record(tenant_id, record, IngestionMode.manual, default_provider)
    if event is None:
        return []
    event.raw_data = dict(entry)
    return [event]
