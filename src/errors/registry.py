"""Catalogue of coded errors reported by ingestion and the API.

Codes are grouped by their first digit:

- E-1xxx  the inbound payload itself is unusable
- E-2xxx  status mapping lookups and mapping edits
- E-3xxx  the order state machine refused a change
- E-4xxx  storage and unexpected processing failures
- E-5xxx  authentication and tenant resolution
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    DATA = "data"
    VALIDATION = "validation"
    STATE = "state"
    SYSTEM = "system"
    AUTH = "auth"


@dataclass(frozen=True)
class ErrorCode:
    """One registry entry.

    ``message_template`` uses str.format placeholders filled from the
    context passed to FulfillmentError.from_code. ``is_retryable`` marks
    failures a dead-letter replay can be expected to clear.
    """

    code: str
    category: ErrorCategory
    title: str
    message_template: str
    remediation: str
    is_retryable: bool = False


ERROR_REGISTRY: dict[str, ErrorCode] = {
    # Payload
    "E-1001": ErrorCode(
        code="E-1001",
        category=ErrorCategory.DATA,
        title="No Events Found",
        message_template="No shipment events could be extracted from the {channel} payload.",
        remediation="Check that the payload contains a tracking number and a status.",
    ),
    "E-1002": ErrorCode(
        code="E-1002",
        category=ErrorCategory.DATA,
        title="Missing Tracking Number",
        message_template="Required field 'tracking_number' is missing.",
        remediation="Provide a tracking number (or AWB) and retry.",
    ),
    "E-1003": ErrorCode(
        code="E-1003",
        category=ErrorCategory.DATA,
        title="Unknown Tracking Number",
        message_template="Tracking number '{tracking_number}' is not registered to any order.",
        remediation="Register the shipment against its order, then replay the event.",
    ),
    "E-1004": ErrorCode(
        code="E-1004",
        category=ErrorCategory.DATA,
        title="Missing Status",
        message_template="Required field 'status' is missing.",
        remediation="Provide the carrier status text and retry.",
    ),
    # Mapping
    "E-2001": ErrorCode(
        code="E-2001",
        category=ErrorCategory.VALIDATION,
        title="Unmapped Carrier Status",
        message_template="No mapping rule for provider '{provider}' status '{provider_status}'.",
        remediation="Add a status mapping for this provider status; the event is kept for replay.",
    ),
    "E-2002": ErrorCode(
        code="E-2002",
        category=ErrorCategory.VALIDATION,
        title="Invalid Internal Status",
        message_template="'{internal_status}' is not a known internal order state.",
        remediation="Use one of the canonical internal states.",
    ),
    "E-2003": ErrorCode(
        code="E-2003",
        category=ErrorCategory.VALIDATION,
        title="Terminal Flag Mismatch",
        message_template="Mapping to '{internal_status}' must set is_terminal={expected}.",
        remediation="Terminal states (delivered, cancelled, return_received) must be flagged terminal.",
    ),
    "E-2004": ErrorCode(
        code="E-2004",
        category=ErrorCategory.VALIDATION,
        title="Station Mismatch",
        message_template="'{internal_status}' routes to station '{expected}', not '{station}'.",
        remediation="Omit triggers_station or use the station from the routing table.",
    ),
    # State machine
    "E-3001": ErrorCode(
        code="E-3001",
        category=ErrorCategory.STATE,
        title="Terminal State Regression",
        message_template="Order '{order_id}' is terminal in '{current_state}'; '{attempted_state}' was rejected.",
        remediation="Review the event. Reopen the order explicitly if the change is intended.",
    ),
    "E-3002": ErrorCode(
        code="E-3002",
        category=ErrorCategory.STATE,
        title="Invalid Reopen",
        message_template="Order '{order_id}' cannot be reopened from '{current_state}' to '{attempted_state}'.",
        remediation="Only terminal orders can be reopened, to a permitted follow-up state.",
    ),
    # Storage and processing
    "E-4001": ErrorCode(
        code="E-4001",
        category=ErrorCategory.SYSTEM,
        title="Database Error",
        message_template="Database operation failed: {error}",
        remediation="The event was captured to the dead-letter queue and will be retried.",
        is_retryable=True,
    ),
    "E-4002": ErrorCode(
        code="E-4002",
        category=ErrorCategory.SYSTEM,
        title="Unexpected Error",
        message_template="An unexpected error occurred: {error}",
        remediation="The event was captured to the dead-letter queue. Contact support if it persists.",
        is_retryable=True,
    ),
    # Auth and tenancy
    "E-5001": ErrorCode(
        code="E-5001",
        category=ErrorCategory.AUTH,
        title="Missing Tenant",
        message_template="Request is missing the X-Tenant-ID header.",
        remediation="Send the tenant identifier in the X-Tenant-ID header.",
    ),
}


def get_error(code: str) -> ErrorCode | None:
    return ERROR_REGISTRY.get(code)


def get_errors_by_category(category: ErrorCategory) -> list[ErrorCode]:
    """Entries in ``category``, in code order."""
    return sorted(
        (entry for entry in ERROR_REGISTRY.values() if entry.category == category),
        key=lambda entry: entry.code,
    )
