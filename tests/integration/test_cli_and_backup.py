"""
Tests for the command line interface and database backups.
"""
import os
import zipfile

import pytest
from click.testing import CliRunner

from main import cli
from procurement.backup import ARCHIVE_PREFIX, BackupService
from procurement.store import LEDGER, ORDERS


@pytest.fixture
def run(seeded_store, test_config):
    """Invoke the CLI against the seeded test database."""
    runner = CliRunner()

    def _run(*args):
        return runner.invoke(cli, ["--db", str(test_config.db_path), *args])

    return _run


@pytest.mark.integration
class TestCli:
    """main.py commands."""

    def test_reconcile(self, run, make_order, seeded_store):
        make_order(status="Received")
        result = run("reconcile", "--strategy", "point_lookup", "--batch-size", "1")

        assert result.exit_code == 0, result.output
        assert "Entries created:   2" in result.output
        assert seeded_store.count(LEDGER) == 2

    def test_transition_with_lines(self, run, make_order, seeded_store):
        order_id = make_order(status="Sent to Supplier")
        result = run("transition", order_id, "Partially Received", "-l", "ITEM-1=3", "-l", "ITEM-2=100")

        assert result.exit_code == 0, result.output
        assert "backorder" in result.output
        assert seeded_store.get(ORDERS, order_id)["status"] == "Partially Received"

    def test_refused_transition_exits_non_zero(self, run, make_order):
        result = run("transition", make_order(), "Approved")
        assert result.exit_code == 1

    def test_malformed_line(self, run, make_order):
        result = run("transition", make_order(status="Sent to Supplier"), "Received", "-l", "ITEM-1")
        assert result.exit_code == 2

    def test_item_prices_json(self, run, make_entry):
        make_entry(unit_price=2.0)
        result = run("item-prices", "ITEM-1", "--json")
        assert result.exit_code == 0
        assert '"supplier_id": "SUP-001"' in result.output

    def test_project_report(self, run, make_entry):
        make_entry(quantity=3, unit_price=4.0)
        result = run("project", "PRJ-1")
        assert result.exit_code == 0
        assert "Metro Line" in result.output
        assert run("project", "PRJ-404").exit_code == 1

    def test_variations_bad_date(self, run):
        assert run("variations", "--from", "someday").exit_code == 2

    def test_audit_exit_code(self, run, make_entry):
        assert run("audit").exit_code == 0
        make_entry(order_id="gone")
        result = run("audit")
        assert result.exit_code == 1
        assert "orphan_entry" in result.output


@pytest.mark.integration
class TestBackupService:
    """procurement.backup."""

    def test_archive_holds_database_and_settings(self, seeded_store, test_config, temp_dir):
        settings_dir = temp_dir / "config"
        settings_dir.mkdir()
        (settings_dir / "ledger_settings.json").write_text("{}")

        name = BackupService(test_config).create_backup()

        assert name.startswith(ARCHIVE_PREFIX)
        with zipfile.ZipFile(test_config.backup_dir / name) as archive:
            names = archive.namelist()
        assert "output/ledger.db" in names
        assert "config/ledger_settings.json" in names
        assert BackupService(test_config).get_last_backup_time() is not None

    def test_rotation_keeps_newest(self, test_config):
        test_config.backup_retention_count = 2
        service = BackupService(test_config)
        for n in range(4):
            path = service.backup_dir / f"{ARCHIVE_PREFIX}2024010{n}_000000.zip"
            path.write_bytes(b"")
            mtime = 1_700_000_000 + n
            os.utime(path, (mtime, mtime))

        removed = service.rotate_backups()

        assert sorted(removed) == [f"{ARCHIVE_PREFIX}20240100_000000.zip", f"{ARCHIVE_PREFIX}20240101_000000.zip"]
        assert len(list(service.backup_dir.glob("*.zip"))) == 2

    def test_no_backups_yet(self, test_config):
        assert BackupService(test_config).get_last_backup_time() is None
