"""Concurrent writers against one unit, and all-or-nothing commits.

SQLite serializes writers with its own database lock, so two writers never
hold uncommitted writes at the same instant here. What these tests pin down
is the lost-update guarantee: a writer that read the unit before another
writer committed is rejected when it flushes, whether its change was already
pending or is made after the other commit.
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from building_ledger.models import Base, Charge, CreditMovement, MovementType, Payment, Unit
from building_ledger.services.building_service import BuildingService
from building_ledger.services.credit_service import CreditLedgerService
from building_ledger.services.errors import ConcurrencyConflictError, LedgerInvariantError
from building_ledger.services.payment_service import PaymentService
from building_ledger.services.settlement_service import SettlementService


@pytest.fixture
def session_factory(tmp_path):
    """File-backed database so two sessions can hold separate connections."""
    engine = create_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine)
    engine.dispose()


@pytest.fixture
def seeded(session_factory):
    """One unit with 500 credit and a March settlement (fee 1000)."""
    session = session_factory()
    buildings = BuildingService(session)
    building = buildings.create_building("Torre Norte")
    unit = buildings.create_unit(building.id, "1A", Decimal("100"))
    settlement = SettlementService(session).create_settlement(
        building.id, 3, 2025, Decimal("1000"), due_date1=date(2025, 3, 10), due_date2=date(2025, 3, 20)
    )
    CreditLedgerService(session).record_manual_adjustment(unit.id, Decimal("500"), MovementType.CREDIT, "Saldo")
    ids = {"unit_id": unit.id, "settlement_id": settlement.id}
    session.close()
    return ids


class TestConcurrentWriters:
    def test_stale_writer_is_rejected(self, session_factory, seeded):
        unit_id = seeded["unit_id"]
        first = session_factory()
        second = session_factory()
        try:
            # Both read the same pre-update balance
            assert first.get(Unit, unit_id).credit_balance == Decimal("500.00")
            assert second.get(Unit, unit_id).credit_balance == Decimal("500.00")

            PaymentService(second).record_payment(
                unit_id, seeded["settlement_id"], Decimal("200"), "R-2", date(2025, 3, 15)
            )

            with pytest.raises(ConcurrencyConflictError) as excinfo:
                CreditLedgerService(first).apply_available_credit(unit_id, date(2025, 3, 15))
            assert excinfo.value.retryable is True
        finally:
            first.close()
            second.close()

        check = session_factory()
        try:
            unit = check.get(Unit, unit_id)
            charge = check.query(Charge).filter_by(unit_id=unit_id).one()
            # 200 cash + the 500 credit pulled forward by the committed writer only
            assert charge.principal_paid == Decimal("700.00")
            assert unit.credit_balance == Decimal("0.00")
            assert CreditLedgerService(check).verify_balance(unit) == Decimal("0.00")
        finally:
            check.close()

    def test_pending_change_is_rejected_after_other_commit(self, session_factory, seeded):
        unit_id = seeded["unit_id"]
        first = session_factory()
        second = session_factory()
        try:
            # First writer has an unflushed change when the second one commits
            stale = first.get(Unit, unit_id)
            stale.credit_balance = Decimal("999.00")

            PaymentService(second).record_payment(
                unit_id, seeded["settlement_id"], Decimal("200"), "R-2", date(2025, 3, 15)
            )

            with pytest.raises(StaleDataError):
                first.flush()
            first.rollback()
        finally:
            first.close()
            second.close()

        check = session_factory()
        try:
            unit = check.get(Unit, unit_id)
            assert unit.credit_balance == Decimal("0.00")
            assert CreditLedgerService(check).verify_balance(unit) == Decimal("0.00")
            assert check.query(CreditMovement).filter_by(movement_type=MovementType.DEBIT).count() == 1
        finally:
            check.close()

    def test_retry_from_fresh_read_succeeds(self, session_factory, seeded):
        unit_id = seeded["unit_id"]
        first = session_factory()
        second = session_factory()
        try:
            first.get(Unit, unit_id)
            CreditLedgerService(second).record_manual_adjustment(
                unit_id, Decimal("100"), MovementType.DEBIT, "Devolución"
            )

            with pytest.raises(ConcurrencyConflictError):
                PaymentService(first).record_payment(
                    unit_id, seeded["settlement_id"], Decimal("100"), "R-3", date(2025, 3, 15)
                )
        finally:
            first.close()
            second.close()

        retry = session_factory()
        try:
            summary = PaymentService(retry).record_payment(
                unit_id, seeded["settlement_id"], Decimal("100"), "R-3", date(2025, 3, 15)
            )
            # Sees the debit: 400 credit left, all of it pulled into March
            assert summary.applied_to_future == Decimal("400.00")
            assert summary.credit_balance == Decimal("0.00")
            assert retry.query(Payment).count() == 1
        finally:
            retry.close()


class TestAllOrNothing:
    def test_failure_after_writes_rolls_everything_back(self, session_factory, seeded, monkeypatch):
        def broken_verify(self, unit):
            raise LedgerInvariantError("simulated drift")

        monkeypatch.setattr(CreditLedgerService, "verify_balance", broken_verify)
        session = session_factory()
        try:
            with pytest.raises(LedgerInvariantError):
                PaymentService(session).record_payment(
                    seeded["unit_id"], seeded["settlement_id"], Decimal("1500"), "R-1", date(2025, 3, 5)
                )

            session.expire_all()
            assert session.query(Payment).count() == 0
            charge = session.query(Charge).filter_by(unit_id=seeded["unit_id"]).one()
            assert charge.principal_paid == Decimal("0.00")
            assert session.get(Unit, seeded["unit_id"]).credit_balance == Decimal("500.00")
            assert session.query(CreditMovement).count() == 1
        finally:
            session.close()
