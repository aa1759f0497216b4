"""CLI output formatters for Rich tables and JSON.

Provides human-readable Rich table output (default) and machine-parseable
JSON output (--json flag). All formatting goes through these functions
so the CLI commands stay clean.
"""

import dataclasses
import json
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from src.db.models import CourierPerformanceDaily, DeadLetter
from src.errors import FulfillmentError, format_error_summary, get_error
from src.services.courier_performance import recommendations_of
from src.services.ingestion import IngestResult
from src.services.sla_tracker import StationMetricView
from src.services.status_mapping import StatusRule

console = Console()

# Outcome color map for ingestion results
OUTCOME_COLORS = {
    "transitioned": "green",
    "unchanged": "white",
    "skipped": "dim",
    "unmatched": "yellow",
    "unmapped": "yellow",
    "anomaly": "magenta",
    "failed": "red",
}

DEAD_LETTER_COLORS = {
    "pending": "yellow",
    "resolved": "green",
    "exhausted": "red",
}


def _render(renderable: Any) -> str:
    with console.capture() as capture:
        console.print(renderable)
    return capture.get()


def _outcome(result: IngestResult) -> str:
    if result.skipped:
        return "skipped"
    if not result.success:
        return "failed"
    return (result.data or {}).get("outcome", "ingested")


def format_ingest_results(results: list[IngestResult], as_json: bool = False) -> str:
    """Format ingestion results as a Rich table or JSON.

    Args:
        results: Results in submission order.
        as_json: If True, return JSON string instead of Rich table.

    Returns:
        Formatted string output.
    """
    if as_json:
        return json.dumps([r.to_dict() for r in results], indent=2)

    if not results:
        return "No events found."

    table = Table(title="Ingestion Results", show_lines=True)
    table.add_column("#", justify="right")
    table.add_column("Tracking", style="cyan")
    table.add_column("Outcome")
    table.add_column("Internal Status")
    table.add_column("Reason")

    for index, result in enumerate(results, start=1):
        data = result.data or {}
        outcome = _outcome(result)
        color = OUTCOME_COLORS.get(outcome, "white")
        table.add_row(
            str(index),
            data.get("tracking_number") or "—",
            f"[{color}]{outcome}[/{color}]",
            data.get("internal_status") or "—",
            (result.reason or "—")[:60],
        )
    return _render(table)


def format_order_detail(detail: dict[str, Any], as_json: bool = False) -> str:
    """Format an order's state and history as a Rich panel or JSON."""
    history = [
        {
            "seq": event.seq,
            "from_state": event.from_state,
            "to_state": event.to_state,
            "station": event.station,
            "triggered_by": event.triggered_by,
            "is_reopen": event.is_reopen,
            "occurred_at": event.occurred_at,
        }
        for event in detail["history"]
    ]
    open_station: StationMetricView | None = detail.get("open_station")
    if as_json:
        payload = {k: v for k, v in detail.items() if k not in ("history", "open_station")}
        payload["history"] = history
        payload["open_station"] = dataclasses.asdict(open_station) if open_station else None
        return json.dumps(payload, indent=2)

    lines = [
        f"[bold]Order:[/bold]    {detail['order_id']}",
        f"[bold]State:[/bold]    {detail['state']}",
        f"[bold]Station:[/bold]  {detail['station']}",
        f"[bold]Updated:[/bold]  {detail['updated_at'][:19] if detail['updated_at'] else '—'}",
    ]
    if detail.get("terminal_lock"):
        lines.append(f"[bold]Locked:[/bold]   [magenta]{detail['terminal_lock']}[/magenta]")
    if open_station is not None:
        breach = "[red]BREACHED[/red]" if open_station.breached else "[green]ok[/green]"
        lines.append(
            f"[bold]SLA:[/bold]      {open_station.elapsed_minutes:.0f}/"
            f"{open_station.sla_target_minutes} min {breach}"
        )
    lines.append("")
    lines.append("[bold]History:[/bold]")
    for entry in history:
        marker = " (reopen)" if entry["is_reopen"] else ""
        lines.append(
            f"  {entry['seq']:>3}. {entry['from_state'] or '∅'} → {entry['to_state']}"
            f" [{entry['triggered_by']}]{marker}"
        )
    return _render(Panel("\n".join(lines), title="Order Detail", border_style="cyan"))


def format_station_metrics(views: list[StationMetricView], as_json: bool = False) -> str:
    """Format open station rows as a Rich table or JSON."""
    if as_json:
        return json.dumps([dataclasses.asdict(v) for v in views], indent=2)

    if not views:
        return "No open station rows."

    table = Table(title="Station SLA", show_lines=True)
    table.add_column("Order", style="cyan")
    table.add_column("Station")
    table.add_column("Entered")
    table.add_column("Minutes", justify="right")
    table.add_column("Target", justify="right")
    table.add_column("Breached")
    for view in views:
        table.add_row(
            view.order_id,
            view.station,
            view.entered_at[:19],
            f"{view.elapsed_minutes:.1f}",
            str(view.sla_target_minutes),
            "[red]yes[/red]" if view.breached else "[green]no[/green]",
        )
    return _render(table)


def format_courier_performance(
    rows: list[CourierPerformanceDaily], as_json: bool = False
) -> str:
    """Format daily courier rows as a Rich table or JSON."""
    if as_json:
        return json.dumps(
            [
                {
                    "courier": r.courier,
                    "date": r.date,
                    "region": r.region,
                    "total_shipments": r.total_shipments,
                    "delivery_rate": r.delivery_rate,
                    "return_rate": r.return_rate,
                    "on_time_rate": r.on_time_rate,
                    "avg_pickup_hours": r.avg_pickup_hours,
                    "score": r.score,
                    "recommendations": recommendations_of(r),
                }
                for r in rows
            ],
            indent=2,
        )

    if not rows:
        return "No courier performance rows found."

    table = Table(title="Courier Performance", show_lines=True)
    table.add_column("Courier", style="cyan")
    table.add_column("Date")
    table.add_column("Region")
    table.add_column("Shipments", justify="right")
    table.add_column("Delivered", justify="right", style="green")
    table.add_column("Returned", justify="right", style="red")
    table.add_column("Score", justify="right", style="bold")
    table.add_column("Recommendations")
    for r in rows:
        table.add_row(
            r.courier,
            r.date,
            r.region,
            str(r.total_shipments),
            f"{r.delivery_rate:.0%}",
            f"{r.return_rate:.0%}",
            str(r.score),
            "\n".join(recommendations_of(r)) or "—",
        )
    return _render(table)


def format_dead_letters(letters: list[DeadLetter], as_json: bool = False) -> str:
    """Format dead letters as a Rich table or JSON."""
    if as_json:
        return json.dumps(
            [
                {
                    "id": letter.id,
                    "workflow_name": letter.workflow_name,
                    "status": letter.status,
                    "retry_count": letter.retry_count,
                    "error_message": letter.error_message,
                    "created_at": letter.created_at,
                }
                for letter in letters
            ],
            indent=2,
        )

    if not letters:
        return "No dead letters found."

    table = Table(title="Dead Letters", show_lines=True)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Workflow")
    table.add_column("Status")
    table.add_column("Retries", justify="right")
    table.add_column("Error")
    table.add_column("Created")
    for letter in letters:
        color = DEAD_LETTER_COLORS.get(letter.status, "white")
        table.add_row(
            letter.id[:12],
            letter.workflow_name,
            f"[{color}]{letter.status}[/{color}]",
            f"{letter.retry_count}/{letter.max_retries}",
            (letter.last_error or letter.error_message)[:50],
            letter.created_at[:19] if letter.created_at else "—",
        )
    return _render(table)


def format_mappings(rules: list[StatusRule], as_json: bool = False) -> str:
    """Format status mapping rules as a Rich table or JSON."""
    if as_json:
        return json.dumps([rule.to_dict() for rule in rules], indent=2)

    if not rules:
        return "No status mappings found."

    table = Table(title="Status Mappings")
    table.add_column("Scope", style="dim")
    table.add_column("Provider", style="cyan")
    table.add_column("Provider Status")
    table.add_column("Internal Status", style="bold")
    table.add_column("Station")
    table.add_column("Terminal")
    for rule in rules:
        table.add_row(
            rule.scope.value,
            rule.provider,
            rule.provider_status,
            rule.internal_status.value,
            rule.triggers_station.value,
            "yes" if rule.is_terminal else "",
        )
    return _render(table)


def format_result_errors(results: list[IngestResult]) -> str | None:
    """Group coded reasons across a batch, e.g. one unmapped status on many rows.

    Returns:
        Grouped summary, or None if no result carries an error code.
    """
    errors = []
    for row, result in enumerate(results, start=1):
        if not result.reason or not result.reason.startswith("E-"):
            continue
        code, _, message = result.reason.partition(": ")
        definition = get_error(code)
        errors.append(
            FulfillmentError(
                code=code,
                message=message,
                remediation=definition.remediation if definition else "Contact support.",
                rows=[row],
            )
        )
    if not errors:
        return None
    return format_error_summary(errors)
