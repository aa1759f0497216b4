"""Tests for CLI commands run in-process against an in-memory database."""

from contextlib import contextmanager

import pytest
from typer.testing import CliRunner

from src.cli import main as cli_main
from src.cli.main import app
from src.db.models import DeadLetter, OrderState

runner = CliRunner()


@pytest.fixture
def cli_db(db_session, monkeypatch, tmp_path):
    """Point the CLI at the test session and away from local config files."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))

    @contextmanager
    def _context():
        yield db_session
        db_session.commit()

    monkeypatch.setattr(cli_main, "get_db_context", _context)
    monkeypatch.setattr(cli_main, "init_db", lambda: None)
    monkeypatch.setattr(cli_main, "_config_path", None)
    return db_session


class TestIngestCommands:
    """fulfillment ingest ..."""

    def test_csv_ingest(self, cli_db, tmp_path, register_shipment, tenant_id):
        register_shipment("AWB1", "ORD-1", "aramex")
        export = tmp_path / "export.csv"
        export.write_text("tracking_number,status\nAWB1,SHP\n")

        result = runner.invoke(
            app, ["ingest", "csv", str(export), "-t", tenant_id, "-p", "aramex"]
        )

        assert result.exit_code == 0, result.output
        assert cli_db.get(OrderState, (tenant_id, "ORD-1")).state == "shipped"

    def test_email_without_tracking_exits_nonzero(self, cli_db, tmp_path, tenant_id):
        message = tmp_path / "message.txt"
        message.write_text("Your parcel has been delivered.")

        result = runner.invoke(app, ["ingest", "email", str(message), "-t", tenant_id])

        assert result.exit_code == 1

    def test_missing_file(self, cli_db, tmp_path, tenant_id):
        result = runner.invoke(
            app, ["ingest", "api", str(tmp_path / "absent.json"), "-t", tenant_id]
        )
        assert result.exit_code == 1
        assert "File not found" in result.output

    def test_tenant_from_environment(self, cli_db, tmp_path, register_shipment, monkeypatch):
        register_shipment("AWB1", "ORD-1", "aramex")
        monkeypatch.setenv("FULFILLMENT_TENANT", "acme")
        body = tmp_path / "hook.json"
        body.write_text('{"tracking_number": "AWB1", "provider": "aramex", "status": "DEL"}')

        result = runner.invoke(app, ["ingest", "api", str(body)])

        assert result.exit_code == 0, result.output
        assert cli_db.get(OrderState, ("acme", "ORD-1")).state == "delivered"


class TestOrderCommands:
    """fulfillment order ..."""

    def test_show_unknown_order(self, cli_db, tenant_id):
        result = runner.invoke(app, ["order", "show", "ORD-404", "-t", tenant_id])
        assert result.exit_code == 1

    def test_reopen_delivered_order(self, cli_db, tmp_path, register_shipment, tenant_id):
        register_shipment("AWB1", "ORD-1", "aramex")
        body = tmp_path / "hook.json"
        body.write_text('{"tracking_number": "AWB1", "provider": "aramex", "status": "DEL"}')
        runner.invoke(app, ["ingest", "api", str(body), "-t", tenant_id])

        result = runner.invoke(
            app,
            ["order", "reopen", "ORD-1", "--to", "return_requested",
             "--reason", "refused", "-t", tenant_id],
        )

        assert result.exit_code == 0, result.output
        assert cli_db.get(OrderState, (tenant_id, "ORD-1")).state == "return_requested"

    def test_reopen_unknown_state(self, cli_db, tenant_id):
        result = runner.invoke(
            app,
            ["order", "reopen", "ORD-1", "--to", "teleported", "--reason", "x", "-t", tenant_id],
        )
        assert result.exit_code == 1


class TestMaintenanceCommands:
    """mappings, SLA, couriers and dead letters."""

    def test_mappings_seed_is_repeatable(self, cli_db):
        first = runner.invoke(app, ["mappings", "seed"])
        second = runner.invoke(app, ["mappings", "seed"])

        assert first.exit_code == 0
        assert "Seeded 17" in first.output
        assert "Seeded 0" in second.output

    def test_sla_sweep(self, cli_db, tenant_id):
        result = runner.invoke(app, ["sla", "sweep", "-t", tenant_id])
        assert result.exit_code == 0
        assert "Alerted 0" in result.output

    def test_couriers_compute(self, cli_db, register_shipment, tenant_id, at):
        register_shipment("AWB1", "ORD-1", "aramex", created_at=at(9, 0, day=10))

        result = runner.invoke(
            app, ["couriers", "compute", "-t", tenant_id, "--date", "2026-03-15"]
        )

        assert result.exit_code == 0, result.output
        assert "Computed 1" in result.output

    def test_dead_letter_resolve_unknown(self, cli_db, tenant_id):
        result = runner.invoke(app, ["dead-letters", "resolve", "nope", "-t", tenant_id])
        assert result.exit_code == 1
        assert cli_db.query(DeadLetter).count() == 0

    def test_dead_letter_retry_with_nothing_pending(self, cli_db, tenant_id):
        result = runner.invoke(app, ["dead-letters", "retry", "-t", tenant_id])
        assert result.exit_code == 0
        assert "resolved=0" in result.output


class TestConfigCommands:
    """fulfillment config ..."""

    def test_validate_without_file(self, cli_db):
        result = runner.invoke(app, ["config", "validate"])
        assert result.exit_code == 1
        assert "No config file found" in result.output

    def test_validate_good_file(self, cli_db, tmp_path):
        path = tmp_path / "fulfillment.yaml"
        path.write_text("daemon:\n  port: 9001\n")

        result = runner.invoke(app, ["config", "validate", "--config", str(path)])
        assert result.exit_code == 0
        assert "Config is valid" in result.output

    def test_show_reports_overrides(self, cli_db, monkeypatch):
        monkeypatch.setenv("FULFILLMENT_DAEMON_PORT", "9123")
        result = runner.invoke(app, ["config", "show"])
        assert result.exit_code == 0
        assert "9123" in result.output
