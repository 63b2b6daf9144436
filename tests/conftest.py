"""
Pytest Configuration and Fixtures
"""

import os
import sys
import pytest
import tempfile

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["API_KEY"] = "test-key-12345"
os.environ["RAIL_ADMINISTRATOR"] = "admin-1"
os.environ["RAIL_REPORTER"] = "reporter-1"
os.environ["RAIL_PRIMARY_RATE"] = "100"
os.environ["RAIL_SECONDARY_RATE"] = "200"
os.environ.pop("DATABASE_URL", None)

from settlement_rail.billing.rails import InMemoryPaymentRails
from settlement_rail.core.access import AccessControl
from settlement_rail.core.collaborator import RailRegistration
from settlement_rail.core.facts import FactJournal
from settlement_rail.core.ledger import UsageLedger
from settlement_rail.core.rates import RateTable
from settlement_rail.operator import LedgerOperator

ADMIN = "admin-1"
REPORTER = "reporter-1"


@pytest.fixture
def rates():
    """Rates of 100 per primary unit and 200 per secondary unit."""
    return RateTable(100, 200)


@pytest.fixture
def journal():
    return FactJournal()


@pytest.fixture
def ledger(rates, journal):
    return UsageLedger(rates, journal=journal)


@pytest.fixture
def rails():
    return InMemoryPaymentRails()


@pytest.fixture
def register_rail(rails):
    """Bind a rail with the given lockup to an (entity, category) pair."""
    def _register(entity_id, category, lockup, rail_id=None):
        rail_id = rail_id or f"rail-{entity_id}-{category.value.lower()}"
        rails.register_rail(RailRegistration(
            entity_id=entity_id,
            category=category,
            rail_id=rail_id,
            lockup_limit=lockup,
        ))
        return rail_id
    return _register


@pytest.fixture
def operator(rates, rails, journal):
    return LedgerOperator(
        rates=rates,
        access=AccessControl(ADMIN, REPORTER),
        rails=rails,
        journal=journal,
    )


@pytest.fixture
def temp_db():
    """Create a temporary database file for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    yield f"sqlite:///{db_path}"

    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(db_path + suffix)
        except FileNotFoundError:
            pass
