"""
Pytest configuration and fixtures for the fuel ledger test suite

Markers:
    - unit: Fast unit tests
    - property: Property-based tests (Hypothesis)
    - integration: Multi-component tests against a real database
    - concurrency: Tests that run work on several threads
    - api: HTTP router tests through the FastAPI TestClient
"""

import pytest
import sys
import os
from decimal import Decimal

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.orm import sessionmaker

import ledger_models
from database import build_engine, init_db
from fuel_operations import InMemoryFuelingOperationLookup, OperationSummary
from ledger_config import LedgerConfig
from movement_service import MovementService
from mrn_ledger import MrnLedger
from tank_state import TankLockRegistry


# ═══════════════════════════════════════════════════════════════════════════════
# PYTEST CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════════

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "property: Property-based tests (Hypothesis)")
    config.addinivalue_line("markers", "integration: Multi-component tests against a real database")
    config.addinivalue_line("markers", "concurrency: Tests that run work on several threads")
    config.addinivalue_line("markers", "api: HTTP router tests through the FastAPI TestClient")


# ═══════════════════════════════════════════════════════════════════════════════
# DATABASE
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.fixture
def config():
    """Default ledger configuration, independent of the environment"""
    return LedgerConfig()


@pytest.fixture(scope="function")
def db_session(config):
    """Create a fresh in-memory database session (tables + immutability triggers) for each test"""
    engine = build_engine("sqlite://", config)
    init_db(engine)

    Session = sessionmaker(bind=engine)
    session = Session()

    yield session

    session.close()
    engine.dispose()


@pytest.fixture
def session_factory(tmp_path, config):
    """File-backed database for tests where each worker thread needs its own session"""
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}", config)
    init_db(engine)

    factory = sessionmaker(bind=engine)

    yield factory

    engine.dispose()


# ═══════════════════════════════════════════════════════════════════════════════
# COLLABORATORS
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.fixture
def operations():
    """Fueling operations known to the lookup"""
    from datetime import datetime
    lookup = InMemoryFuelingOperationLookup()
    lookup.add(OperationSummary(
        id="FO-1001",
        aircraft_registration="9A-CTG",
        date_time=datetime(2025, 3, 14, 9, 30),
        quantity_liters=Decimal("3000"),
        quantity_kg=Decimal("2400"),
    ))
    lookup.add(OperationSummary(
        id="FO-1002",
        aircraft_registration="E7-SMA",
        date_time=datetime(2025, 3, 14, 11, 5),
        quantity_liters=Decimal("1250"),
        quantity_kg=Decimal("1000"),
    ))
    return lookup


@pytest.fixture
def locks():
    """Private lock registry so tests never contend with each other"""
    return TankLockRegistry()


@pytest.fixture
def movements(db_session, config, operations, locks):
    return MovementService(db_session, config, operations, locks)


# ═══════════════════════════════════════════════════════════════════════════════
# TANKS
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.fixture
def fixed_tank(db_session):
    """Empty fixed storage tank with the standard 24,500 L capacity"""
    tank = ledger_models.FixedTank(
        name="Fixed Tank 1",
        location="Apron North",
        capacity_liters=Decimal("24500"),
        current_liters=Decimal("0"),
        current_kg=Decimal("0"),
        density_reference=Decimal("0.8"),
    )
    db_session.add(tank)
    db_session.commit()
    return tank


@pytest.fixture
def mobile_tank(db_session):
    """Empty mobile tanker"""
    tank = ledger_models.MobileTank(
        name="Tanker 7",
        registration="E-777-AB",
        capacity_liters=Decimal("20000"),
        current_liters=Decimal("0"),
        current_kg=Decimal("0"),
        density_reference=Decimal("0.8"),
    )
    db_session.add(tank)
    db_session.commit()
    return tank


@pytest.fixture
def seed_tank(config):
    """
    Provision a tank with MRN balances and a recorded level, bypassing the journal.

    Usage: seed_tank(db, tank, [("MRN-A", "1000", "800")], level=("1000", "800"))
    The level defaults to the sum of the balances.
    """
    from datetime import datetime, timedelta

    def _seed(db, tank, balances, level=None):
        ledger = MrnLedger(db, config)
        start = datetime(2025, 1, 1)
        total_liters = Decimal("0")
        total_kg = Decimal("0")
        for i, (mrn, liters, kg) in enumerate(balances):
            ledger.allocate(
                tank.id, mrn, Decimal(liters), Decimal(kg),
                density=Decimal("0.8"),
                allocated_at=start + timedelta(days=i)
            )
            total_liters += Decimal(liters)
            total_kg += Decimal(kg)
        if level is None:
            level = (total_liters, total_kg)
        tank.current_liters = Decimal(level[0])
        tank.current_kg = Decimal(level[1])
        db.commit()
        return tank

    return _seed
