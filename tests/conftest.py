"""Pytest fixtures for shopflow tests."""

import tempfile
from decimal import Decimal
from pathlib import Path

import pytest

from shopflow.database import Database
from shopflow.gateways import GatewayRegistry, PayPalGateway, StripeGateway
from shopflow.inventory import InventoryLedger
from shopflow.orders import OrderLine, OrderStore
from shopflow.settlement import SettlementWorkflow

ADMIN_HEADERS = {"X-User-Id": "1", "X-User-Role": "admin"}
CUSTOMER_HEADERS = {"X-User-Id": "42", "X-User-Role": "customer"}
OTHER_CUSTOMER_HEADERS = {"X-User-Id": "43", "X-User-Role": "customer"}

CUSTOMER_ID = 42


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def db(temp_dir):
    """A file-backed SQLite database with the schema created."""
    database = Database(f"sqlite:///{temp_dir / 'shopflow.db'}")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def ledger(db):
    return InventoryLedger(db)


@pytest.fixture
def order_store(db, ledger):
    return OrderStore(db, ledger)


def make_gateways(success_rate: float = 1.0, latency: float = 0.0, timeout: float = 2.0):
    """Both built-in providers with a fixed outcome."""
    return GatewayRegistry(
        {
            "paypal": PayPalGateway(success_rate=success_rate, latency=latency),
            "stripe": StripeGateway(success_rate=success_rate, latency=latency),
        },
        timeout=timeout,
    )


@pytest.fixture
def gateways():
    """Gateways whose charges always succeed."""
    registry = make_gateways(success_rate=1.0)
    yield registry
    registry.close()


@pytest.fixture
def declining_gateways():
    """Gateways whose charges always decline."""
    registry = make_gateways(success_rate=0.0)
    yield registry
    registry.close()


@pytest.fixture
def slow_gateways():
    """Gateways that answer well after the registry timeout."""
    registry = make_gateways(success_rate=1.0, latency=1.0, timeout=0.05)
    yield registry
    registry.close()


@pytest.fixture
def workflow(db, gateways):
    return SettlementWorkflow(db, gateways)


@pytest.fixture
def product(ledger):
    """A product with stock 10 at 5.00."""
    return ledger.create_product(name="Widget", price=Decimal("5.00"), stock=10)


@pytest.fixture
def place_order(workflow):
    """Place an order for CUSTOMER_ID: place_order([(product_id, qty), ...])."""

    def _place(lines, payment_method="paypal", customer_id=CUSTOMER_ID):
        return workflow.place_order(
            customer_id=customer_id,
            lines=[OrderLine(product_id=pid, quantity=qty) for pid, qty in lines],
            payment_method=payment_method,
            address="1 Main St",
            phone="555-0100",
        )

    return _place


@pytest.fixture
def api_client(workflow):
    """Test client wired to the test workflow."""
    from fastapi.testclient import TestClient

    from shopflow.api import app, get_workflow

    app.dependency_overrides[get_workflow] = lambda: workflow
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()
