"""Error handling framework for the fulfillment tracker.

This package provides:
- Error code registry with E-XXXX format codes
- Typed domain exceptions for service and API layers
- Error formatting and grouping utilities

Error categories:
- E-1xxx: Ingestion data errors
- E-2xxx: Mapping and validation errors
- E-3xxx: Order state machine errors
- E-4xxx: System/internal errors
- E-5xxx: Authentication and tenancy errors
"""

from src.errors.domain import (
    ConflictError,
    DomainError,
    InvalidTransition,
    NotFoundError,
    TerminalStateRegression,
    ValidationError,
)
from src.errors.formatter import (
    FulfillmentError,
    format_error,
    format_error_summary,
    group_errors,
)
from src.errors.registry import (
    ERROR_REGISTRY,
    ErrorCategory,
    ErrorCode,
    get_error,
    get_errors_by_category,
)

__all__ = [
    # Registry
    "ErrorCode",
    "ErrorCategory",
    "ERROR_REGISTRY",
    "get_error",
    "get_errors_by_category",
    # Domain
    "DomainError",
    "NotFoundError",
    "ConflictError",
    "ValidationError",
    "TerminalStateRegression",
    "InvalidTransition",
    # Formatter
    "FulfillmentError",
    "format_error",
    "group_errors",
    "format_error_summary",
]
