"""Unit tests for src/errors/registry.py.

Tests verify:
- Every code used by the ingestion pipeline and API is registered
- Codes sit in the category their prefix names
"""

import pytest

from src.errors.registry import ERROR_REGISTRY, ErrorCategory, get_error, get_errors_by_category


@pytest.mark.parametrize(
    "code,category,title",
    [
        ("E-1001", ErrorCategory.DATA, "No Events Found"),
        ("E-1002", ErrorCategory.DATA, "Missing Tracking Number"),
        ("E-1003", ErrorCategory.DATA, "Unknown Tracking Number"),
        ("E-1004", ErrorCategory.DATA, "Missing Status"),
        ("E-2001", ErrorCategory.VALIDATION, "Unmapped Carrier Status"),
        ("E-2002", ErrorCategory.VALIDATION, "Invalid Internal Status"),
        ("E-2003", ErrorCategory.VALIDATION, "Terminal Flag Mismatch"),
        ("E-2004", ErrorCategory.VALIDATION, "Station Mismatch"),
        ("E-3001", ErrorCategory.STATE, "Terminal State Regression"),
        ("E-3002", ErrorCategory.STATE, "Invalid Reopen"),
        ("E-4001", ErrorCategory.SYSTEM, "Database Error"),
        ("E-4002", ErrorCategory.SYSTEM, "Unexpected Error"),
        ("E-5001", ErrorCategory.AUTH, "Missing Tenant"),
    ],
)
def test_error_codes_registered(code, category, title):
    """All pipeline error codes must be registered."""
    error = get_error(code)
    assert error is not None, f"{code} not found in registry"
    assert error.category == category
    assert error.title == title


def test_prefix_matches_category():
    prefixes = {
        "1": ErrorCategory.DATA,
        "2": ErrorCategory.VALIDATION,
        "3": ErrorCategory.STATE,
        "4": ErrorCategory.SYSTEM,
        "5": ErrorCategory.AUTH,
    }
    for code, error in ERROR_REGISTRY.items():
        assert error.code == code
        assert error.category == prefixes[code[2]]


def test_only_system_errors_are_retryable():
    retryable = {code for code, error in ERROR_REGISTRY.items() if error.is_retryable}
    assert retryable == {"E-4001", "E-4002"}


def test_unknown_code():
    assert get_error("E-9999") is None


def test_errors_by_category():
    codes = [e.code for e in get_errors_by_category(ErrorCategory.STATE)]
    assert sorted(codes) == ["E-3001", "E-3002"]
