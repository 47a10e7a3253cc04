"""Pytest configuration: in-memory database and ledger fixtures."""

import os

# Set test database URL BEFORE any imports from building_ledger
# so the module-level engine never touches a file database
os.environ["DATABASE_URL"] = "sqlite:///:memory:"

from datetime import date  # noqa: E402
from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from building_ledger.models import Base  # noqa: E402
from building_ledger.services.arrears_service import ArrearsService  # noqa: E402
from building_ledger.services.building_service import BuildingService  # noqa: E402
from building_ledger.services.credit_service import CreditLedgerService  # noqa: E402
from building_ledger.services.payment_service import PaymentService  # noqa: E402
from building_ledger.services.settlement_service import SettlementService  # noqa: E402


@pytest.fixture
def db_session():
    """Create test database session."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    session = SessionLocal()
    yield session
    session.close()
    engine.dispose()


@pytest.fixture
def buildings(db_session):
    return BuildingService(db_session)


@pytest.fixture
def settlements(db_session):
    return SettlementService(db_session)


@pytest.fixture
def payments(db_session):
    return PaymentService(db_session)


@pytest.fixture
def credit(db_session):
    return CreditLedgerService(db_session)


@pytest.fixture
def arrears(db_session):
    return ArrearsService(db_session)


@pytest.fixture
def building(buildings):
    """Building with two units sharing the expense 50/50."""
    building = buildings.create_building("Torre Norte", "Av. Siempreviva 742")
    buildings.create_unit(building.id, "1A", Decimal("50"))
    buildings.create_unit(building.id, "1B", Decimal("50"))
    return building


@pytest.fixture
def unit_a(building):
    return next(u for u in building.units if u.code == "1A")


@pytest.fixture
def unit_b(building):
    return next(u for u in building.units if u.code == "1B")


@pytest.fixture
def make_settlement(settlements, building):
    """Create a 2000 settlement (1000 per unit) for a month.

    Due dates default to the 10th and the 20th of that month.
    """

    def _make(month, year=2025, total=Decimal("2000"), **kwargs):
        if "due_date1" not in kwargs:
            kwargs["due_date1"] = date(year, month, 10)
        if "due_date2" not in kwargs:
            kwargs["due_date2"] = date(year, month, 20)
        return settlements.create_settlement(building.id, month, year, total, **kwargs)

    return _make
