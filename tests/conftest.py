"""
Shared pytest fixtures for the EscrowFlow test suite.
"""

import pytest

from escrowflow_core.clock import ManualClock
from escrowflow_core.engine import EscrowEngine
from escrowflow_core.ledger import InMemoryLedger
from escrowflow_core.storage import EscrowStore

SEED = b"escrowflow-test-seed"
ASSET = "USD"


@pytest.fixture
def ledger():
    """Reference ledger with alice holding 1000 USD and bob 50 USD."""
    led = InMemoryLedger()
    led.mint("alice", ASSET, 1_000)
    led.mint("bob", ASSET, 50)
    return led


@pytest.fixture
def clock():
    return ManualClock(10)


@pytest.fixture
def store(tmp_path):
    """Fresh EscrowStore in a temp directory."""
    s = EscrowStore(str(tmp_path / "escrow.db"))
    yield s
    s.close()


@pytest.fixture
def engine(ledger, store, clock):
    return EscrowEngine(ledger, store, clock, SEED)


@pytest.fixture
def created(engine):
    """alice/1: 100 USD for bob, arbiter carol, auto-release at slot 50."""
    return engine.initialize("alice", 1, "bob", "carol", ASSET, 100, auto_release_deadline=50)


@pytest.fixture
def funded(engine, created):
    return engine.fund("alice", "alice", 1)


@pytest.fixture
def disputed(engine, funded):
    return engine.raise_dispute("bob", "alice", 1, "item not received")
