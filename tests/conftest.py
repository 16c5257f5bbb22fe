"""
Pytest configuration and fixtures for perpguard tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest

from infra.metrics import MetricsRecorder
from infra.state_store import EngineRecord, LedgerStore
from tools.config_validator import RiskParams


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def store():
    """In-memory ledger with engines 1 and 2 registered."""
    ledger = LedgerStore(":memory:")
    ledger.upsert_engine(EngineRecord(id=1, name="alpha"))
    ledger.upsert_engine(EngineRecord(id=2, name="beta"))
    yield ledger
    ledger.close()


@pytest.fixture
def risk_params():
    return RiskParams()


@pytest.fixture
def metrics():
    """Recorder with the exporter disabled; tallies still work."""
    return MetricsRecorder(enabled=False)
