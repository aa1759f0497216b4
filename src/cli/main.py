"""Fulfillment tracker CLI.

Runs operations in-process against the configured database, and starts
the HTTP API.

Usage:
    fulfillment serve                              Start the HTTP API
    fulfillment ingest csv export.csv -t acme      Ingest a carrier CSV export
    fulfillment ingest email message.txt -t acme   Ingest a carrier email
    fulfillment order show ORD-1 -t acme           Show order state and history
    fulfillment sla sweep -t acme                  Alert on breached stations
    fulfillment couriers compute -t acme           Recompute courier analytics
"""

import logging
import os
from datetime import date
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from src.cli.config import FulfillmentConfig, get_config
from src.cli.output import (
    format_courier_performance,
    format_dead_letters,
    format_ingest_results,
    format_mappings,
    format_order_detail,
    format_result_errors,
    format_station_metrics,
)
from src.db.connection import get_db_context, init_db
from src.db.models import DeadLetterStatus
from src.errors import DomainError
from src.services.courier_performance import CourierPerformanceService
from src.services.dead_letter import get_dead_letters, resolve_dead_letter
from src.services.ingestion import IngestionService
from src.services.order_state import OrderStateMachine
from src.services.sla_tracker import StationSlaTracker
from src.services.status_mapping import StatusMappingService

_log = logging.getLogger(__name__)

app = typer.Typer(
    name="fulfillment",
    help="Multi-tenant order fulfillment tracking",
    no_args_is_help=True,
)
config_app = typer.Typer(help="Configuration management")
ingest_app = typer.Typer(help="Ingest carrier events")
order_app = typer.Typer(help="Inspect and reopen orders")
sla_app = typer.Typer(help="Station SLA tracking")
couriers_app = typer.Typer(help="Courier performance analytics")
dead_letters_app = typer.Typer(help="Dead-letter queue")
mappings_app = typer.Typer(help="Provider status mappings")

app.add_typer(config_app, name="config")
app.add_typer(ingest_app, name="ingest")
app.add_typer(order_app, name="order")
app.add_typer(sla_app, name="sla")
app.add_typer(couriers_app, name="couriers")
app.add_typer(dead_letters_app, name="dead-letters")
app.add_typer(mappings_app, name="mappings")

console = Console()

# --- Global state ---
_config_path: str | None = None

TenantOption = typer.Option(
    ..., "--tenant", "-t", envvar="FULFILLMENT_TENANT", help="Tenant identifier"
)
JsonOption = typer.Option(False, "--json", help="Output as JSON")


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to fulfillment.yaml config file"
    ),
):
    """Fulfillment tracker CLI."""
    global _config_path
    _config_path = config


def _load() -> FulfillmentConfig:
    try:
        cfg = get_config(config_path=_config_path)
    except FileNotFoundError as e:
        console.print(f"[red]Config file not found:[/red] {e}")
        raise typer.Exit(1)
    except (ValueError, TypeError) as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)
    cfg.apply_runtime_env()
    init_db()
    return cfg


def _ingestion(db, cfg: FulfillmentConfig) -> IngestionService:
    return IngestionService(
        db,
        default_provider=cfg.ingestion.default_provider,
        email_excerpt_chars=cfg.ingestion.email_excerpt_chars,
    )


def _read_text(path: Path) -> str:
    if not path.exists():
        console.print(f"[red]File not found:[/red] {path}")
        raise typer.Exit(1)
    return path.read_text(encoding="utf-8-sig")


# --- Version ---


@app.command()
def version():
    """Show the installed version."""
    from importlib.metadata import version as pkg_version
    try:
        v = pkg_version("fulfillment-tracker")
    except Exception:
        v = "unknown"
    console.print(f"[bold]Fulfillment Tracker[/bold] v{v}")


# --- Config commands ---


@config_app.command("show")
def config_show():
    """Display resolved configuration."""
    cfg = get_config(config_path=_config_path)
    console.print("[bold]Daemon:[/bold]")
    console.print(f"  host: {cfg.daemon.host}")
    console.print(f"  port: {cfg.daemon.port}")
    console.print(f"  log_level: {cfg.daemon.log_level}")

    console.print("\n[bold]Ingestion:[/bold]")
    console.print(f"  default_provider: {cfg.ingestion.default_provider}")
    console.print(f"  email_excerpt_chars: {cfg.ingestion.email_excerpt_chars}")

    console.print("\n[bold]Analytics:[/bold]")
    console.print(f"  window_days: {cfg.analytics.window_days}")
    console.print(f"  on_time_hours: {cfg.analytics.on_time_hours}")

    console.print("\n[bold]Mapping cache:[/bold]")
    console.print(f"  enabled: {cfg.mapping_cache.enabled}")
    console.print(f"  ttl_seconds: {cfg.mapping_cache.ttl_seconds}")


@config_app.command("validate")
def config_validate(
    config: Optional[str] = typer.Option(None, "--config", help="Config file path"),
):
    """Validate a config file without starting the server."""
    from src.cli.config import load_config

    path = config or _config_path
    try:
        cfg = load_config(config_path=path)
    except FileNotFoundError as e:
        console.print(f"[red]Config file not found:[/red] {e}")
        raise typer.Exit(1)
    except (ValueError, TypeError) as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)
    if cfg is None:
        console.print("[red]No config file found.[/red]")
        console.print("Searched: ./fulfillment.yaml, ~/.fulfillment/config.yaml")
        raise typer.Exit(1)
    console.print("[green]Config is valid.[/green]")


# --- Server ---


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port"),
):
    """Start the HTTP API with uvicorn."""
    import uvicorn

    cfg = _load()
    final_host = host or cfg.daemon.host
    final_port = port or cfg.daemon.port

    # Propagate config path to API startup so both load the same file.
    if _config_path:
        os.environ["FULFILLMENT_CONFIG_PATH"] = str(_config_path)

    console.print(f"[bold]Starting fulfillment API on {final_host}:{final_port}[/bold]")
    uvicorn.run(
        "src.api.main:app",
        host=final_host,
        port=final_port,
        log_level=cfg.daemon.log_level,
    )


# --- Ingestion ---


@ingest_app.command("csv")
def ingest_csv(
    file: Path = typer.Argument(..., help="CSV export to ingest"),
    tenant: str = TenantOption,
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Carrier code"),
    as_json: bool = JsonOption,
):
    """Ingest a carrier CSV export; each row is processed independently."""
    cfg = _load()
    csv_text = _read_text(file)
    with get_db_context() as db:
        results = _ingestion(db, cfg).submit_csv_batch(tenant, csv_text, provider=provider)
        console.print(format_ingest_results(results, as_json=as_json))
    summary = None if as_json else format_result_errors(results)
    if summary:
        console.print(summary, markup=False)
    if any(not r.success for r in results):
        raise typer.Exit(1)


@ingest_app.command("email")
def ingest_email(
    file: Path = typer.Argument(..., help="Plain-text email body"),
    tenant: str = TenantOption,
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Carrier code"),
    as_json: bool = JsonOption,
):
    """Ingest a carrier notification email."""
    cfg = _load()
    body = _read_text(file)
    with get_db_context() as db:
        result = _ingestion(db, cfg).submit_email_event(tenant, body, provider=provider)
        console.print(format_ingest_results([result], as_json=as_json))
    if not result.success:
        raise typer.Exit(1)


@ingest_app.command("api")
def ingest_api(
    file: Path = typer.Argument(..., help="JSON webhook body"),
    tenant: str = TenantOption,
    as_json: bool = JsonOption,
):
    """Ingest a saved carrier webhook body."""
    cfg = _load()
    body = _read_text(file)
    with get_db_context() as db:
        result = _ingestion(db, cfg).submit_api_event(tenant, body)
        console.print(format_ingest_results([result], as_json=as_json))
    if not result.success:
        raise typer.Exit(1)


# --- Orders ---


@order_app.command("show")
def order_show(
    order_id: str = typer.Argument(..., help="Order identifier"),
    tenant: str = TenantOption,
    as_json: bool = JsonOption,
):
    """Show an order's state, open station and transition history."""
    _load()
    with get_db_context() as db:
        try:
            detail = OrderStateMachine(db).describe(tenant, order_id)
        except DomainError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)
        console.print(format_order_detail(detail, as_json=as_json))


@order_app.command("reopen")
def order_reopen(
    order_id: str = typer.Argument(..., help="Order identifier"),
    to_state: str = typer.Option(..., "--to", help="Target state"),
    reason: str = typer.Option(..., "--reason", help="Why the order is reopened"),
    tenant: str = TenantOption,
):
    """Reopen a terminal order into a permitted follow-up state."""
    _load()
    with get_db_context() as db:
        try:
            result = OrderStateMachine(db).reopen(tenant, order_id, to_state, reason)
        except (DomainError, ValueError) as e:
            db.rollback()
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)
        console.print(
            f"[green]Reopened[/green] {order_id}: {result.from_state} → {result.to_state}"
        )


# --- SLA ---


@sla_app.command("metrics")
def sla_metrics(
    tenant: str = TenantOption,
    station: Optional[str] = typer.Option(None, "--station", help="Filter by station"),
    breached_only: bool = typer.Option(False, "--breached", help="Only breached rows"),
    as_json: bool = JsonOption,
):
    """List open station rows with elapsed time and breach flag."""
    _load()
    with get_db_context() as db:
        views = StationSlaTracker(db).get_station_metrics(
            tenant, station=station, breached_only=breached_only
        )
        console.print(format_station_metrics(views, as_json=as_json))


@sla_app.command("sweep")
def sla_sweep(tenant: str = TenantOption):
    """Audit each newly breached station row once."""
    _load()
    with get_db_context() as db:
        alerted = StationSlaTracker(db).sweep_breaches(tenant)
        console.print(f"Alerted {len(alerted)} breached station row(s).")
        if alerted:
            console.print(format_station_metrics(alerted))


# --- Couriers ---


@couriers_app.command("compute")
def couriers_compute(
    tenant: str = TenantOption,
    report_date: Optional[str] = typer.Option(
        None, "--date", help="Report date (YYYY-MM-DD), default today"
    ),
):
    """Recompute daily courier performance for the trailing window."""
    cfg = _load()
    day = date.fromisoformat(report_date) if report_date else None
    with get_db_context() as db:
        summaries = CourierPerformanceService(db).compute_daily(
            tenant,
            report_date=day,
            window_days=cfg.analytics.window_days,
            on_time_hours=cfg.analytics.on_time_hours,
        )
        console.print(f"Computed {len(summaries)} courier bucket(s).")


@couriers_app.command("show")
def couriers_show(
    tenant: str = TenantOption,
    courier: Optional[str] = typer.Option(None, "--courier", help="Courier code"),
    date_from: Optional[str] = typer.Option(None, "--from", help="Start date"),
    date_to: Optional[str] = typer.Option(None, "--to", help="End date"),
    region: Optional[str] = typer.Option(None, "--region", help="Region"),
    as_json: bool = JsonOption,
):
    """Show stored courier performance rows."""
    _load()
    with get_db_context() as db:
        rows = CourierPerformanceService(db).get_courier_performance(
            tenant,
            courier=courier,
            date_from=date.fromisoformat(date_from) if date_from else None,
            date_to=date.fromisoformat(date_to) if date_to else None,
            region=region,
        )
        console.print(format_courier_performance(rows, as_json=as_json))


# --- Dead letters ---


@dead_letters_app.command("list")
def dead_letters_list(
    tenant: str = TenantOption,
    status: Optional[DeadLetterStatus] = typer.Option(None, "--status", help="Filter by status"),
    as_json: bool = JsonOption,
):
    """List dead letters, newest first."""
    _load()
    with get_db_context() as db:
        letters = get_dead_letters(db, tenant, status=status)
        console.print(format_dead_letters(letters, as_json=as_json))


@dead_letters_app.command("retry")
def dead_letters_retry(tenant: str = TenantOption):
    """Replay pending ingestion dead letters."""
    cfg = _load()
    with get_db_context() as db:
        counts = _ingestion(db, cfg).replay_dead_letters(tenant)
    console.print(
        f"resolved={counts['resolved']} failed={counts['failed']} "
        f"exhausted={counts['exhausted']}"
    )


@dead_letters_app.command("resolve")
def dead_letters_resolve(
    dead_letter_id: str = typer.Argument(..., help="Dead letter ID"),
    tenant: str = TenantOption,
):
    """Mark a dead letter resolved after manual intervention."""
    _load()
    with get_db_context() as db:
        try:
            resolve_dead_letter(db, tenant, dead_letter_id)
        except DomainError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)
    console.print(f"[green]Resolved[/green] {dead_letter_id}")


# --- Mappings ---


@mappings_app.command("list")
def mappings_list(
    tenant: str = TenantOption,
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Carrier code"),
    as_json: bool = JsonOption,
):
    """List effective status mappings for a tenant."""
    _load()
    with get_db_context() as db:
        rules = StatusMappingService(db).list_mappings(tenant, provider=provider)
        console.print(format_mappings(rules, as_json=as_json))


@mappings_app.command("seed")
def mappings_seed():
    """Copy built-in provider defaults into the mapping table."""
    _load()
    with get_db_context() as db:
        inserted = StatusMappingService(db).seed_defaults()
    console.print(f"Seeded {inserted} mapping row(s).")


if __name__ == "__main__":
    app()
