"""Pytest configuration and fixtures."""

import os
from datetime import datetime
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from sip_engine.data.database import close_database, get_session_factory, init_database
from sip_engine.data.models import Plan, PlanStatus
from sip_engine.execution.trade_client import SettledTrade


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    monkeypatch.setenv("PAPER_TRADING", "true")
    monkeypatch.delenv("TRADE_API_URL", raising=False)


@pytest.fixture(autouse=True)
def _reset_config_singleton():
    """Ensure each test gets a fresh Config singleton.

    Without this, monkeypatch.setenv in individual tests would be
    ignored because get_config() returns the cached singleton from
    a previous test.
    """
    from sip_engine.config.base import reset_config

    reset_config()
    yield
    reset_config()


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Setup test environment before all tests."""
    os.environ["DATABASE_URL"] = "sqlite:///:memory:"
    os.environ["PAPER_TRADING"] = "true"
    os.environ["LOG_LEVEL"] = "ERROR"  # Reduce noise during tests

    yield


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
def temp_database():
    """Provide an in-memory SQLite database with all tables created."""
    engine = init_database(database_url="sqlite:///:memory:")
    yield engine
    close_database()


@pytest.fixture
def session_factory(temp_database):
    return get_session_factory()


# ---------------------------------------------------------------------------
# Clock and plans
# ---------------------------------------------------------------------------

NOW = datetime(2025, 3, 10, 9, 30)


class FakeClock:
    """Settable naive-UTC clock."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_plan(session_factory):
    """Insert a plan row and return its id."""

    def _make_plan(
        status: str = PlanStatus.ACTIVE,
        cadence: str = "daily",
        amount: str = "10",
        wallet_id: str = "wallet-1",
        from_asset: str = "ETH",
        to_asset: str = "USDC",
        next_execution: datetime = NOW,
        total_executions: int = 0,
        created_at: datetime = NOW,
    ) -> int:
        session = session_factory()
        try:
            plan = Plan(
                wallet_id=wallet_id,
                from_asset=from_asset,
                to_asset=to_asset,
                amount=Decimal(amount),
                cadence=cadence,
                status=status,
                next_execution=next_execution,
                total_executions=total_executions,
                created_at=created_at,
                updated_at=created_at,
            )
            session.add(plan)
            session.commit()
            return plan.id
        finally:
            session.close()

    return _make_plan


@pytest.fixture
def load_plan(session_factory):
    """Read a plan row back (detached)."""

    def _load_plan(plan_id: int):
        session = session_factory()
        try:
            return session.get(Plan, plan_id)
        finally:
            session.close()

    return _load_plan


# ---------------------------------------------------------------------------
# Trade clients
# ---------------------------------------------------------------------------


def settled_trade(wallet_id: str = "wallet-1", trade_id: str = "trade-1") -> SettledTrade:
    return SettledTrade(
        trade_id=trade_id,
        wallet_id=wallet_id,
        amount=Decimal("10"),
        from_asset="ETH",
        to_asset="USDC",
        transaction_hash="0xabc",
        network="base",
    )


@pytest.fixture
def trade_client():
    """AsyncMock trade client that settles every trade."""
    client = AsyncMock()
    client.execute_trade = AsyncMock(return_value=settled_trade())
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def no_sleep():
    """Zero-delay sleep that records requested delays."""
    return AsyncMock(return_value=None)


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "e2e: End-to-end tests")
