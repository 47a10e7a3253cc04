"""Integration tests for the unit credit ledger."""

from datetime import date
from decimal import Decimal

import pytest

from building_ledger.models import AuditLog, ChargeStatus, CreditMovement, MovementType
from building_ledger.services.errors import (
    DataValidationError,
    LedgerInvariantError,
    NotFoundError,
)


class TestApplyAvailableCredit:
    """Credit against overdue periods, then the forward pass."""

    def test_credit_retires_arrears_period(self, credit, make_settlement, db_session, buildings, unit_a):
        # 200 total at 50% -> fee 100; two months late at 10% -> late fee 20
        settlement = make_settlement(1, total=Decimal("200"))
        credit.record_manual_adjustment(unit_a.id, Decimal("150"), MovementType.CREDIT, "Saldo a favor")

        result = credit.apply_available_credit(unit_a.id, date(2025, 3, 5), settlement_id=settlement.id)

        assert result.credit_before == Decimal("150.00")
        assert result.applied_to_arrears == Decimal("120.00")
        assert result.applied_to_future == Decimal("0.00")
        assert result.applied_to_current == Decimal("120.00")
        assert result.credit_after == Decimal("30.00")
        assert result.charge.status == ChargeStatus.PAID
        assert result.charge.late_fee_paid == Decimal("20.00")

        allocation = result.arrears_allocations[0]
        assert allocation.principal_from_credit == Decimal("100.00")
        assert allocation.late_from_credit == Decimal("20.00")
        assert allocation.payment_id is None

        debit = db_session.query(CreditMovement).filter_by(movement_type=MovementType.DEBIT).one()
        assert debit.amount == Decimal("120.00")
        assert debit.late_fee_portion == Decimal("20.00")
        assert debit.payment_id is None
        assert debit.charge_id == result.charge.charge_id
        assert credit.verify_balance(buildings.get_unit(unit_a.id)) == Decimal("30.00")

    def test_remaining_credit_goes_forward(self, credit, make_settlement, db_session, unit_a):
        make_settlement(1)
        march = make_settlement(3)
        credit.record_manual_adjustment(unit_a.id, Decimal("1500"), MovementType.CREDIT, "Saldo a favor")

        result = credit.apply_available_credit(unit_a.id, date(2025, 3, 5), settlement_id=march.id)

        assert result.applied_to_arrears == Decimal("1200.00")
        assert result.applied_to_future == Decimal("300.00")
        assert result.applied_to_current == Decimal("300.00")
        assert result.credit_after == Decimal("0.00")
        assert result.charge.total_to_pay == Decimal("700.00")
        assert result.charge.status == ChargeStatus.PARTIAL
        assert result.total_applied == Decimal("1500.00")

    def test_forward_pass_without_second_due_date(self, credit, make_settlement, unit_a):
        """A period without a second due date is upcoming from its own month on."""
        february = make_settlement(2, due_date1=None, due_date2=None)
        may = make_settlement(5, due_date1=None, due_date2=None)
        credit.record_manual_adjustment(unit_a.id, Decimal("300"), MovementType.CREDIT, "Saldo a favor")

        result = credit.apply_available_credit(unit_a.id, date(2025, 3, 5))

        assert [a.settlement_id for a in result.forward_allocations] == [may.id]
        assert february.id not in [a.settlement_id for a in result.forward_allocations]

    def test_forward_pass_oldest_first(self, credit, make_settlement, unit_a):
        april = make_settlement(4)
        march = make_settlement(3)
        credit.record_manual_adjustment(unit_a.id, Decimal("1200"), MovementType.CREDIT, "Saldo a favor")

        result = credit.apply_available_credit(unit_a.id, date(2025, 3, 5))

        assert [(a.settlement_id, a.applied) for a in result.forward_allocations] == [
            (march.id, Decimal("1000.00")),
            (april.id, Decimal("200.00")),
        ]
        assert result.forward_allocations[0].status == ChargeStatus.PAID

    def test_no_credit_is_a_no_op(self, credit, make_settlement, db_session, unit_a):
        settlement = make_settlement(1)

        result = credit.apply_available_credit(unit_a.id, date(2025, 3, 5), settlement_id=settlement.id)

        assert result.total_applied == Decimal("0.00")
        assert result.credit_after == Decimal("0.00")
        assert result.charge.total_to_pay == Decimal("1000.00")
        assert db_session.query(CreditMovement).count() == 0

    def test_unknown_unit(self, credit):
        with pytest.raises(NotFoundError):
            credit.apply_available_credit(999, date(2025, 3, 5))


class TestManualAdjustments:
    def test_credit_and_debit(self, credit, db_session, unit_a):
        credit.record_manual_adjustment(unit_a.id, Decimal("100"), MovementType.CREDIT, "Ajuste")
        movement = credit.record_manual_adjustment(unit_a.id, "40", "DEBIT", "Devolución")

        assert movement.movement_type == MovementType.DEBIT
        assert credit.get_balance(unit_a.id) == Decimal("60.00")
        assert db_session.query(AuditLog).filter_by(action="manual_adjustment").count() == 2

    def test_debit_cannot_exceed_balance(self, credit, unit_a):
        credit.record_manual_adjustment(unit_a.id, Decimal("10"), MovementType.CREDIT, "Ajuste")

        with pytest.raises(DataValidationError):
            credit.record_manual_adjustment(unit_a.id, Decimal("10.01"), MovementType.DEBIT, "Devolución")

        assert credit.get_balance(unit_a.id) == Decimal("10.00")

    @pytest.mark.parametrize(
        "amount, direction, description",
        [
            (Decimal("0"), MovementType.CREDIT, "Ajuste"),
            (Decimal("10"), "SIDEWAYS", "Ajuste"),
            (Decimal("10"), MovementType.CREDIT, "   "),
        ],
    )
    def test_invalid_input(self, credit, unit_a, amount, direction, description):
        with pytest.raises(DataValidationError):
            credit.record_manual_adjustment(unit_a.id, amount, direction, description)

    def test_unknown_unit(self, credit):
        with pytest.raises(NotFoundError):
            credit.record_manual_adjustment(999, Decimal("10"), MovementType.CREDIT, "Ajuste")


class TestMovementLog:
    def test_newest_first(self, credit, unit_a):
        for amount in ("1", "2", "3"):
            credit.record_manual_adjustment(unit_a.id, Decimal(amount), MovementType.CREDIT, f"Ajuste {amount}")

        movements = credit.list_movements(unit_a.id)

        assert [m.amount for m in movements] == [Decimal("3.00"), Decimal("2.00"), Decimal("1.00")]

    def test_limit_and_cap(self, credit, unit_a, monkeypatch):
        from building_ledger.services import credit_service

        for _ in range(4):
            credit.record_manual_adjustment(unit_a.id, Decimal("1"), MovementType.CREDIT, "Ajuste")

        assert len(credit.list_movements(unit_a.id, limit=2)) == 2

        monkeypatch.setattr(credit_service.settings, "credit_movements_max_limit", 3)
        assert len(credit.list_movements(unit_a.id, limit=50)) == 3

        monkeypatch.setattr(credit_service.settings, "credit_movements_default_limit", 1)
        assert len(credit.list_movements(unit_a.id)) == 1

    def test_other_units_excluded(self, credit, unit_a, unit_b):
        credit.record_manual_adjustment(unit_b.id, Decimal("5"), MovementType.CREDIT, "Ajuste")

        assert credit.list_movements(unit_a.id) == []


class TestBalanceInvariant:
    """Stored balance always equals the signed sum of movements."""

    def test_holds_through_payments(self, credit, payments, make_settlement, buildings, unit_a):
        make_settlement(1)
        march = make_settlement(3)
        make_settlement(4)

        payments.record_payment(unit_a.id, march.id, Decimal("3100"), "R-1", date(2025, 3, 5))
        credit.record_manual_adjustment(unit_a.id, Decimal("25"), MovementType.CREDIT, "Ajuste")

        unit = buildings.get_unit(unit_a.id)
        assert credit.movements_total(unit.id) == unit.credit_balance
        assert credit.verify_balance(unit) == unit.credit_balance

    def test_drift_is_detected(self, credit, buildings, db_session, unit_a):
        credit.record_manual_adjustment(unit_a.id, Decimal("25"), MovementType.CREDIT, "Ajuste")
        unit = buildings.get_unit(unit_a.id)

        unit.credit_balance = Decimal("30")

        with pytest.raises(LedgerInvariantError):
            credit.verify_balance(unit)
        db_session.rollback()

    def test_debit_beyond_balance_is_an_invariant_error(self, credit, buildings, db_session, unit_a):
        unit = buildings.get_unit(unit_a.id)

        with pytest.raises(LedgerInvariantError):
            credit.debit(unit, Decimal("1"), "Imposible")
        db_session.rollback()

    def test_overdue_charges_are_not_upcoming(self, credit, make_settlement, unit_a):
        january = make_settlement(1)
        march = make_settlement(3)

        upcoming = credit.upcoming_charges(unit_a.id, date(2025, 3, 5))

        assert [c.settlement_id for c in upcoming] == [march.id]
        assert january.id not in [c.settlement_id for c in upcoming]
