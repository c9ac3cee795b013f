"""Shared test fixtures and configuration."""

import os
from datetime import date
from typing import Dict, Any

import pytest

# Set up test environment variables before importing modules
os.environ.setdefault("API_KEY", "test_api_key_12345")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PAYMENT_PROJECT_ID", "1001")
os.environ.setdefault("PAYMENT_SECRET_KEY", "sim_secret_key")
os.environ.setdefault("PAYMENT_API_URL", "https://gate.simulator.test")
os.environ.setdefault("PUBLIC_APP_URL", "https://shop.example.com")
os.environ.setdefault("PAYMENT_INIT_RATE_LIMIT", "1000/minute")

from card_gate.config import GatewayConfig
from card_gate.connectors import (
    CardData,
    GateConnector,
    PaymentRequest,
    SimulatedProcessor,
    SimulatorConfig,
)
from card_gate.signature import SignatureEngine
from card_gate.three_ds import ThreeDSOrchestrator

SECRET_KEY = "sim_secret_key"
API_URL = "https://gate.simulator.test"

# Expiry that stays in the future
FUTURE_YEAR = str(date.today().year + 3)


@pytest.fixture
def gateway_config() -> GatewayConfig:
    """Gateway configuration matching the simulator, with no waits."""
    return GatewayConfig(
        project_id=1001,
        secret_key=SECRET_KEY,
        api_url=API_URL,
        public_base_url="https://shop.example.com",
        poll_interval_seconds=0.01,
        poll_timeout_seconds=1.0,
        fingerprint_settle_seconds=0,
    )


@pytest.fixture
def signature_engine() -> SignatureEngine:
    return SignatureEngine(SECRET_KEY)


@pytest.fixture
def simulator() -> SimulatedProcessor:
    """In-memory processor speaking the HTTP API."""
    return SimulatedProcessor(SimulatorConfig(secret_key=SECRET_KEY))


@pytest.fixture
async def connector(gateway_config, simulator):
    """GateConnector whose HTTP traffic is answered by the simulator."""
    client = simulator.client(API_URL)
    gate = GateConnector(gateway_config, http_client=client)
    yield gate
    await client.aclose()


@pytest.fixture
def orchestrator(connector) -> ThreeDSOrchestrator:
    return ThreeDSOrchestrator(connector, settle_delay=0)


def make_card(pan: str = SimulatedProcessor.CARD_SUCCESS, **overrides) -> CardData:
    data = {
        "pan": pan,
        "expiry_month": "12",
        "expiry_year": FUTURE_YEAR,
        "cvv": "123",
        "card_holder": "Jane Doe",
    }
    data.update(overrides)
    return CardData(**data)


def make_request(pan: str = SimulatedProcessor.CARD_SUCCESS, user_id: str = "42", **overrides) -> PaymentRequest:
    data = {
        "user_id": user_id,
        "credits": 100,
        "amount": 999,
        "currency": "EUR",
        "card": make_card(pan),
        "customer_ip": "203.0.113.7",
        "customer_email": "jane@example.com",
    }
    data.update(overrides)
    return PaymentRequest(**data)


@pytest.fixture
def payment_request() -> PaymentRequest:
    return make_request()


@pytest.fixture
def valid_init_body() -> Dict[str, Any]:
    """Return a valid body for the init endpoint."""
    return {
        "user_id": "42",
        "credits": 100,
        "amount": 999,
        "currency": "EUR",
        "card_number": "4111 1111 1111 1111",
        "expiry_month": "12",
        "expiry_year": FUTURE_YEAR[-2:],
        "cvv": "123",
        "card_holder": "Jane Doe",
        "customer_email": "jane@example.com",
    }


@pytest.fixture
def auth_headers() -> Dict[str, str]:
    """Return headers with authentication."""
    return {"Authorization": f"Bearer {os.environ['API_KEY']}"}


# Database fixtures
@pytest.fixture
async def test_db_engine():
    """Create an in-memory SQLite database for testing."""
    from card_gate.database import Base, create_async_engine

    engine = create_async_engine(database_url="sqlite+aiosqlite:///:memory:", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_db_session(test_db_engine):
    """Create a database session for testing."""
    from card_gate.database import get_async_session_factory

    session_factory = get_async_session_factory(test_db_engine)
    async with session_factory() as session:
        yield session


@pytest.fixture
def request_factory():
    """Build PaymentRequests for a given simulator card."""
    return make_request


@pytest.fixture
def card_factory():
    return make_card
