"""
Pytest configuration and shared fixtures for the work order engine test suite.
"""
import os
import shutil
import tempfile
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Generator

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
os.chdir(PROJECT_ROOT)

FIXED_NOW = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)


class FakeNotesGateway:
    """NotesGateway double: answers from a set of order ids with progress notes."""

    def __init__(self, with_notes=()):
        self.with_notes = set(with_notes)

    def has_non_system_progress_note(self, order_id: str) -> bool:
        return order_id in self.with_notes


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for test files."""
    tmp_path = tempfile.mkdtemp(prefix="wrenchbook_test_")
    yield Path(tmp_path)
    shutil.rmtree(tmp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path, monkeypatch) -> "Config":
    """Provide a test configuration with an isolated database."""
    from config import Config

    # Keep a developer's config/engine_settings.json out of the tests
    monkeypatch.setenv("CONFIG_DIR", str(temp_dir / "config"))
    config = Config()
    config.db_path = temp_dir / "data" / "orders.db"
    config.tax_rate_percent = Decimal("8")
    config.actor = "tester"
    config.ensure_data_dir()
    return config


@pytest.fixture
def repository(test_config) -> "OrderRepository":
    """Provide a fresh repository on an empty database."""
    from engine.repository import OrderRepository
    return OrderRepository(test_config.db_path)


@pytest.fixture
def notes_gateway() -> FakeNotesGateway:
    return FakeNotesGateway()


@pytest.fixture
def service(repository, test_config) -> "OrderService":
    """OrderService wired to the test repository and its notes table."""
    from engine.gateways import FlatTaxPolicy
    from engine.service import OrderService
    return OrderService(
        repository,
        tax_policy=FlatTaxPolicy(test_config.tax_rate_percent),
        actor=test_config.actor,
    )


# ---------------------------------------------------------------------------
# Sample line items and orders
# ---------------------------------------------------------------------------

@pytest.fixture
def brake_pads() -> "Part":
    from models.line_items import Part
    return Part(id="p-pads", name="Brake pads", vendor="RockAuto", unit_cost=Decimal("32"), unit_price=Decimal("50"))


@pytest.fixture
def oil_filter() -> "Part":
    from models.line_items import Part
    return Part(id="p-filter", name="Oil filter", vendor="NAPA", unit_cost=Decimal("18"), unit_price=Decimal("30"))


@pytest.fixture
def brake_labor() -> "HourlyLabor":
    from models.line_items import HourlyLabor
    return HourlyLabor(id="l-brakes", description="Replace front pads", quantity=Decimal("2"), rate=Decimal("75"))


@pytest.fixture
def sample_quote(brake_pads, oil_filter, brake_labor) -> "Quote":
    """Quote with $50 + $30 parts and 2h @ $75 labor."""
    from models.order import Quote, ServiceRequest
    return Quote(
        id="q-1",
        title="Brake job",
        customer_id="cust-1",
        vehicle_id="veh-1",
        services=[ServiceRequest(description="Squealing brakes")],
        parts=[brake_pads, oil_filter],
        labor=[brake_labor],
        created_at=FIXED_NOW,
        updated_at=FIXED_NOW,
        status_changed_at=FIXED_NOW,
    )


@pytest.fixture
def sample_work_order(brake_pads, oil_filter, brake_labor) -> "WorkOrder":
    """Work order in Inspection In Progress with two un-ordered parts and one labor item."""
    from models.order import OrderStatus, WorkOrder
    return WorkOrder(
        id="wo-1",
        title="Brake job",
        customer_id="cust-1",
        vehicle_id="veh-1",
        parts=[brake_pads, oil_filter],
        labor=[brake_labor],
        status=OrderStatus.INSPECTION_IN_PROGRESS,
        created_at=FIXED_NOW,
        updated_at=FIXED_NOW,
        status_changed_at=FIXED_NOW,
    )


@pytest.fixture
def stored_quote(repository, sample_quote) -> "Quote":
    """sample_quote persisted at version 1."""
    return repository.save(sample_quote, expected_version=0, action="created")


@pytest.fixture
def stored_work_order(repository, sample_work_order) -> "WorkOrder":
    """sample_work_order persisted at version 1."""
    return repository.save(sample_work_order, expected_version=0, action="created")


# Configure pytest markers
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "api: API tests")
    config.addinivalue_line("markers", "slow: Slow tests")
