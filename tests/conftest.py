#!/usr/bin/env python3
"""
Pytest Configuration and Shared Fixtures

Provides shared fixtures and configuration for all tests.
"""

import pytest
import sys
import os
from pathlib import Path

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from collector.database import create_ledger_engine, init_db
from collector.executor import PaymentExecutor
from collector.ledger import LedgerStore
from collector.reconciliation import ReconciliationWriter
from collector.resilience import PendingReconciliationQueue
from tests.factories import NOW, FakeChain, SleepRecorder, make_settings


# ============================================================================
# ASYNCIO CONFIGURATION
# ============================================================================
# Note: pytest-asyncio is configured with asyncio_mode = "auto" in pyproject.toml
# The event loop is automatically managed per-function by default


# ============================================================================
# SETTINGS
# ============================================================================

@pytest.fixture
def settings():
    """Valid collector settings with fast receipt polling"""
    return make_settings()


# ============================================================================
# LEDGER FIXTURES
# ============================================================================

@pytest.fixture
def ledger_engine(tmp_path: Path):
    """File-backed SQLite ledger (shared across worker threads)"""
    engine = create_ledger_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def ledger(ledger_engine):
    return LedgerStore(ledger_engine)


@pytest.fixture
def pending_queue(tmp_path: Path):
    return PendingReconciliationQueue(tmp_path / "pending.json")


@pytest.fixture
def writer(ledger, pending_queue):
    return ReconciliationWriter(ledger, queue=pending_queue, max_attempts=3, retry_seconds=0)


# ============================================================================
# CHAIN FIXTURES
# ============================================================================

@pytest.fixture
def fake_chain():
    return FakeChain()


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def executor(fake_chain, writer, settings):
    """Executor over the fake chain and the real SQLite ledger"""
    return PaymentExecutor(fake_chain, writer, settings, clock=lambda: NOW)


# ============================================================================
# PYTEST CONFIGURATION
# ============================================================================

def pytest_configure(config):
    """Configure pytest markers"""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (may require network)"
    )
