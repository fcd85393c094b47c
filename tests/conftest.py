"""
Pytest configuration and shared fixtures for the procurement test suite.
"""
import os
import shutil
import tempfile
from pathlib import Path
from typing import Callable, Generator

import pytest

PROJECT_ROOT = Path(__file__).parent.parent
os.chdir(PROJECT_ROOT)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for test files."""
    tmp_path = tempfile.mkdtemp(prefix="ledger_test_")
    yield Path(tmp_path)
    shutil.rmtree(tmp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path, monkeypatch) -> "Config":
    """Provide a test configuration with an isolated database and settings dir."""
    from config import Config

    monkeypatch.setenv("CONFIG_DIR", str(temp_dir / "config"))
    config = Config()
    config.output_dir = temp_dir / "output"
    config.db_path = temp_dir / "output" / "ledger.db"
    config.backup_dir = temp_dir / "backups"
    config.ledger_key_strategy = "preload"
    config.ledger_batch_size = 400
    config.approval_code_length = 6
    config.default_location_id = "main-warehouse"
    config.transaction_retry_delay = 0.01
    config.ensure_output_dir()
    return config


@pytest.fixture
def store(test_config) -> "DocumentStore":
    """Provide an empty document store."""
    from procurement.store import DocumentStore
    return DocumentStore.from_config(test_config)


@pytest.fixture
def seeded_store(store) -> "DocumentStore":
    """Store with suppliers, projects and inventory items but no orders."""
    from procurement.store import INVENTORY, PROJECTS, SUPPLIERS

    store.set(SUPPLIERS, "SUP-001", {"name": "Acme Supplies", "email": "sales@acme.test"})
    store.set(SUPPLIERS, "SUP-002", {"name": "Global Materials"})

    store.set(PROJECTS, "PRJ-1", {"name": "Metro Line", "client": "City Transit", "budget": 10000.0, "spent": 0.0})
    store.set(PROJECTS, "PRJ-2", {"name": "Harbour Bridge", "client": "Port Authority", "spent": 0.0})

    store.set(INVENTORY, "ITEM-1", {"sku": "CAB-001", "name": "Copper cable 6mm", "unit": "ml", "unit_cost": 2.5})
    store.set(INVENTORY, "ITEM-2", {"sku": "BLT-002", "name": "Steel bolt M12", "unit": "ud", "unit_cost": 0.4})
    store.set(INVENTORY, "ITEM-3", {"sku": "PNL-003", "name": "Junction panel", "unit": "ud", "unit_cost": 120.0})
    return store


@pytest.fixture
def make_order(seeded_store) -> Callable[..., str]:
    """
    Factory writing an order record straight to the store.

    Returns the order id. Line items default to two Material lines and one
    Service line.
    """
    from procurement.store import ORDERS

    counter = {"n": 0}

    def _make(
        status: str = "Pending Approval",
        items: list[dict] | None = None,
        order_id: str | None = None,
        **fields,
    ) -> str:
        counter["n"] += 1
        oid = order_id or f"ORD-{counter['n']}"
        record = {
            "order_number": f"OC-9{counter['n']:04d}",
            "project_id": "PRJ-1",
            "supplier_name": "Acme Supplies",
            "supplier_id": "SUP-001",
            "status": status,
            "date": "2024-03-01T09:00:00Z",
            "items": items if items is not None else [
                {"item_id": "ITEM-1", "sku": "CAB-001", "name": "Copper cable 6mm",
                 "quantity": 10, "price": 2.0, "unit": "ml", "type": "Material"},
                {"item_id": "ITEM-2", "sku": "BLT-002", "name": "Steel bolt M12",
                 "quantity": 100, "price": 0.5, "type": "Material"},
                {"item_id": None, "name": "Delivery", "quantity": 1, "price": 30.0, "type": "Service"},
            ],
            "status_history": [{"status": "Pending Approval", "timestamp": "2024-03-01T09:00:00Z",
                                "comment": "Order created"}],
        }
        record.update(fields)
        seeded_store.set(ORDERS, oid, record)
        return oid

    return _make


@pytest.fixture
def make_entry(seeded_store) -> Callable[..., str]:
    """Factory writing a ledger entry straight to the store. Returns its id."""
    from procurement.store import LEDGER

    def _make(**fields) -> str:
        quantity = fields.get("quantity", 1.0)
        unit_price = fields.get("unit_price", 1.0)
        record = {
            "item_id": "ITEM-1",
            "item_sku": "CAB-001",
            "item_name": "Copper cable 6mm",
            "supplier_id": "SUP-001",
            "supplier_name": "Acme Supplies",
            "order_id": "ORD-X",
            "order_number": "OC-00001",
            "quantity": quantity,
            "unit_price": unit_price,
            "total_price": quantity * unit_price,
            "unit": "ml",
            "date": "2024-03-01T09:00:00Z",
            "project_id": "PRJ-1",
            "project_name": "Metro Line",
        }
        record.update(fields)
        return seeded_store.add(LEDGER, record)

    return _make


def ledger_entry(**fields) -> "LedgerEntry":
    """Build an in-memory LedgerEntry with sensible defaults."""
    from models.ledger import LedgerEntry

    quantity = fields.pop("quantity", 1.0)
    unit_price = fields.pop("unit_price", 1.0)
    defaults = {
        "item_id": "ITEM-1",
        "item_name": "Copper cable 6mm",
        "item_sku": "CAB-001",
        "supplier_id": "SUP-001",
        "supplier_name": "Acme Supplies",
        "order_id": "ORD-1",
        "order_number": "OC-00001",
        "quantity": quantity,
        "unit_price": unit_price,
        "total_price": quantity * unit_price,
        "date": "2024-03-01T00:00:00Z",
        "project_id": "PRJ-1",
        "project_name": "Metro Line",
    }
    defaults.update(fields)
    return LedgerEntry.model_validate(defaults)


@pytest.fixture
def entry_factory() -> Callable[..., "LedgerEntry"]:
    return ledger_entry


# Configure pytest markers
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "api: API tests")
    config.addinivalue_line("markers", "slow: Slow tests")
