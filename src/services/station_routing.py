"""Static station routing table and SLA targets.

Every internal order state belongs to exactly one station. The station
decides which team owns the order and how long it may sit there before
its SLA is breached.
"""

from src.db.models import TERMINAL_STATES, InternalOrderState, Station

STATION_ROUTING: dict[InternalOrderState, Station] = {
    InternalOrderState.new: Station.call_center,
    InternalOrderState.call_center_pending: Station.call_center,
    InternalOrderState.call_center_confirmed: Station.call_center,
    InternalOrderState.operations_pending: Station.operations,
    InternalOrderState.operations_processing: Station.operations,
    InternalOrderState.shipped: Station.operations,
    InternalOrderState.in_transit: Station.operations,
    InternalOrderState.out_for_delivery: Station.operations,
    InternalOrderState.cancelled: Station.operations,
    InternalOrderState.delivered: Station.finance,
    InternalOrderState.finance_pending: Station.finance,
    InternalOrderState.finance_settled: Station.finance,
    InternalOrderState.return_requested: Station.returns,
    InternalOrderState.return_in_transit: Station.returns,
    InternalOrderState.return_received: Station.returns,
}

# Maximum dwell time per station, in minutes
SLA_TARGET_MINUTES: dict[Station, int] = {
    Station.call_center: 60,
    Station.operations: 240,
    Station.finance: 1440,
    Station.returns: 2880,
}


def coerce_state(state: str | InternalOrderState) -> InternalOrderState:
    """Convert a raw state string to InternalOrderState.

    Raises:
        ValueError: If the value is not a known internal state.
    """
    if isinstance(state, InternalOrderState):
        return state
    return InternalOrderState(state)


def station_for_state(state: str | InternalOrderState) -> Station:
    """Return the station that owns an internal state."""
    return STATION_ROUTING[coerce_state(state)]


def sla_target_for_station(station: str | Station) -> int:
    """Return the SLA target in minutes for a station."""
    return SLA_TARGET_MINUTES[Station(station)]


def is_terminal_state(state: str | InternalOrderState) -> bool:
    """Return True for delivered, cancelled and return_received."""
    return coerce_state(state) in TERMINAL_STATES
