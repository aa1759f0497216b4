"""Exceptions raised by the services and translated once, in api.main.

Each class carries the HTTP status it maps to, and state-machine
failures also carry their E-3xxx registry code, so routes never need
to catch and re-raise them.

    raise NotFoundError("Shipment", tracking_number)
"""


class DomainError(Exception):
    """Base exception for all domain errors."""

    status_code: int = 400
    error_code: str | None = None


class NotFoundError(DomainError):
    status_code = 404

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier


class ConflictError(DomainError):
    """Duplicate registration or a state the request cannot apply to."""

    status_code = 409


class ValidationError(DomainError):
    """Input rejected by a service after schema validation passed."""


class _OrderStateError(ConflictError):
    template = ""

    def __init__(self, order_id: str, current_state: str | None, attempted_state: str) -> None:
        self.order_id = order_id
        self.current_state = current_state
        self.attempted_state = attempted_state
        super().__init__(
            self.template.format(
                order=order_id, current=current_state, attempted=attempted_state
            )
        )


class TerminalStateRegression(_OrderStateError):
    """A locked terminal order was asked to go back to a working state."""

    error_code = "E-3001"
    template = (
        "Order '{order}' is terminal in '{current}'; "
        "refusing transition to '{attempted}'"
    )


class InvalidTransition(_OrderStateError):
    """The target is not reachable from the order's current state."""

    error_code = "E-3002"
    template = "Cannot move order '{order}' from '{current}' to '{attempted}'"
