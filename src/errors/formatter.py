"""FulfillmentError and the helpers that render it for operators.

Ingestion reports coded failures per event; a CSV batch can produce
the same failure on dozens of rows, so errors are grouped by code and
message before they are printed.
"""

from dataclasses import dataclass, field, replace

from src.errors.registry import get_error

_MAX_LISTED_ROWS = 10


@dataclass
class FulfillmentError(Exception):
    """Coded application error.

    Attributes:
        code: Registry code, E-XXXX.
        message: Rendered message template.
        remediation: What the operator should do about it.
        rows: CSV row numbers the error applies to, if any.
        is_retryable: True when replaying the same input may succeed.
        details: Extra context returned to API callers.
    """

    code: str
    message: str
    remediation: str
    rows: list[int] = field(default_factory=list)
    is_retryable: bool = False
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def to_dict(self) -> dict:
        return {
            "error_code": self.code,
            "message": self.message,
            "remediation": self.remediation,
            "is_retryable": self.is_retryable,
            "details": self.details,
        }

    @classmethod
    def from_code(cls, code: str, **context: object) -> "FulfillmentError":
        """Build an error from its registry entry.

        ``rows`` and ``details`` in context populate those fields; every
        other key fills the message template. A template whose
        placeholders are not all supplied is returned unrendered.
        """
        rows = context.pop("rows", None)
        details = context.pop("details", None)
        rows = rows if isinstance(rows, list) else []
        details = details if isinstance(details, dict) else {}

        definition = get_error(code)
        if definition is None:
            return cls(
                code=code,
                message=f"Unknown error: {code}",
                remediation="Contact support.",
                rows=rows,
                details=details,
            )

        try:
            message = definition.message_template.format(**context)
        except KeyError:
            message = definition.message_template

        return cls(
            code=definition.code,
            message=message,
            remediation=definition.remediation,
            rows=rows,
            is_retryable=definition.is_retryable,
            details=details,
        )


def _describe_rows(rows: list[int]) -> str | None:
    if not rows:
        return None
    if len(rows) == 1:
        return f"Location: Row {rows[0]}"
    listed = ", ".join(map(str, rows[:_MAX_LISTED_ROWS]))
    hidden = len(rows) - _MAX_LISTED_ROWS
    if hidden > 0:
        listed = f"{listed} (and {hidden} more)"
    return f"Affected rows: {listed}"


def format_error(error: FulfillmentError, include_remediation: bool = True) -> str:
    """Render one error as indented terminal lines."""
    lines = [str(error)]
    location = _describe_rows(error.rows)
    if location:
        lines.append(f"  {location}")
    if include_remediation:
        lines.append(f"  Action: {error.remediation}")
    return "\n".join(lines)


def group_errors(errors: list[FulfillmentError]) -> list[FulfillmentError]:
    """Merge errors sharing code and message, unioning their rows.

    Input order of first occurrence is kept. The inputs are not mutated.
    """
    merged: dict[tuple[str, str], FulfillmentError] = {}
    for error in errors:
        key = (error.code, error.message)
        existing = merged.get(key)
        if existing is None:
            merged[key] = replace(error, rows=list(error.rows), details=dict(error.details))
        else:
            existing.rows.extend(error.rows)

    for error in merged.values():
        error.rows = sorted(set(error.rows))
    return list(merged.values())


def format_error_summary(errors: list[FulfillmentError]) -> str:
    """Grouped, numbered summary for CLI output."""
    grouped = group_errors(errors)
    if not grouped:
        return "No errors."
    if len(grouped) == 1:
        return format_error(grouped[0])

    blocks = [f"{index}. {format_error(error)}\n" for index, error in enumerate(grouped, 1)]
    return f"{len(grouped)} error type(s) found:\n\n" + "\n".join(blocks)
