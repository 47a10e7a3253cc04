"""Integration tests for the arrears summary and late-fee freezing."""

from datetime import date
from decimal import Decimal

import pytest

from building_ledger.models import Charge
from building_ledger.services.errors import LedgerInvariantError, NotFoundError


class TestArrearsSummary:
    """Months late, late fees and the per-period breakdown."""

    def test_three_months_late(self, arrears, make_settlement, unit_a):
        settlement = make_settlement(1)

        summary = arrears.get_unit_arrears_summary(unit_a.id, date(2025, 4, 5))

        assert summary.total_arrears == Decimal("1300.00")
        assert len(summary.periods) == 1
        period = summary.periods[0]
        assert period.settlement_id == settlement.id
        assert period.pending_principal == Decimal("1000.00")
        assert period.months_late == 3
        assert period.late_fee_total == Decimal("300.00")
        assert period.late_fee_pending == Decimal("300.00")
        assert period.total_pending == Decimal("1300.00")
        assert period.late_fee_rate == Decimal("10.00")

    def test_uses_settlement_rate(self, arrears, make_settlement, unit_a):
        make_settlement(1, late_fee_rate=Decimal("5"))

        summary = arrears.get_unit_arrears_summary(unit_a.id, date(2025, 4, 5))

        assert summary.periods[0].late_fee_total == Decimal("150.00")

    def test_oldest_period_first(self, arrears, make_settlement, unit_a):
        make_settlement(2)
        make_settlement(12, year=2024)
        make_settlement(1)

        summary = arrears.get_unit_arrears_summary(unit_a.id, date(2025, 3, 1))

        assert [(p.year, p.month) for p in summary.periods] == [(2024, 12), (2025, 1), (2025, 2)]
        assert summary.total_arrears == sum((p.total_pending for p in summary.periods), Decimal("0"))

    def test_not_yet_overdue_excluded(self, arrears, make_settlement, unit_a):
        make_settlement(3)

        summary = arrears.get_unit_arrears_summary(unit_a.id, date(2025, 3, 19))

        assert summary.periods == []
        assert summary.total_arrears == Decimal("0.00")

    def test_settlement_without_second_due_date_never_overdue(self, arrears, make_settlement, unit_a):
        make_settlement(1, due_date1=None, due_date2=None)

        summary = arrears.get_unit_arrears_summary(unit_a.id, date(2026, 1, 1))

        assert summary.periods == []

    def test_paid_period_excluded_and_not_frozen(self, arrears, payments, make_settlement, db_session, unit_a):
        settlement = make_settlement(1)
        payments.record_payment(unit_a.id, settlement.id, Decimal("1000"), "R-1", date(2025, 1, 15))

        summary = arrears.get_unit_arrears_summary(unit_a.id, date(2025, 4, 5))

        assert summary.periods == []
        charge = db_session.query(Charge).filter_by(unit_id=unit_a.id, settlement_id=settlement.id).one()
        assert not charge.is_frozen

    def test_late_fee_based_on_pending_principal(self, arrears, payments, make_settlement, unit_a):
        settlement = make_settlement(1)
        payments.record_payment(unit_a.id, settlement.id, Decimal("600"), "R-1", date(2025, 1, 15))

        summary = arrears.get_unit_arrears_summary(unit_a.id, date(2025, 3, 5))

        period = summary.periods[0]
        assert period.pending_principal == Decimal("400.00")
        assert period.principal_paid == Decimal("600.00")
        assert period.late_fee_total == Decimal("80.00")

    def test_unknown_unit(self, arrears):
        with pytest.raises(NotFoundError):
            arrears.get_unit_arrears_summary(999, date(2025, 1, 1))


class TestLateFeeFreeze:
    """The snapshot is written once and never recomputed."""

    def test_freeze_is_persisted(self, arrears, make_settlement, db_session, unit_a):
        settlement = make_settlement(1)

        arrears.get_unit_arrears_summary(unit_a.id, date(2025, 3, 5))
        db_session.expire_all()

        charge = db_session.query(Charge).filter_by(unit_id=unit_a.id, settlement_id=settlement.id).one()
        assert charge.is_frozen
        assert charge.late_fee_frozen_at == date(2025, 3, 5)
        assert charge.late_fee_months_late == 2
        assert charge.late_fee_amount == Decimal("200.00")

    def test_later_reads_keep_first_snapshot(self, arrears, make_settlement, unit_a):
        make_settlement(1)

        first = arrears.get_unit_arrears_summary(unit_a.id, date(2025, 3, 5))
        same_day = arrears.get_unit_arrears_summary(unit_a.id, date(2025, 3, 5))
        later = arrears.get_unit_arrears_summary(unit_a.id, date(2025, 9, 30))

        for summary in (same_day, later):
            assert summary.periods[0].months_late == first.periods[0].months_late == 2
            assert summary.periods[0].late_fee_total == first.periods[0].late_fee_total == Decimal("200.00")

    def test_freeze_inside_due_month_stays_zero(self, arrears, make_settlement, unit_a):
        """Read right after the second due date: frozen at 0 months, kept at 0."""
        make_settlement(1)

        first = arrears.get_unit_arrears_summary(unit_a.id, date(2025, 1, 25))
        later = arrears.get_unit_arrears_summary(unit_a.id, date(2025, 5, 1))

        assert first.periods[0].months_late == 0
        assert later.periods[0].months_late == 0
        assert later.periods[0].late_fee_total == Decimal("0.00")
        assert later.total_arrears == Decimal("1000.00")

    def test_double_freeze_rejected(self, make_settlement, db_session, unit_a):
        settlement = make_settlement(1)
        charge = db_session.query(Charge).filter_by(unit_id=unit_a.id, settlement_id=settlement.id).one()
        charge.freeze_late_fee(2, Decimal("200"), date(2025, 3, 5))

        with pytest.raises(LedgerInvariantError):
            charge.freeze_late_fee(3, Decimal("300"), date(2025, 4, 5))

        assert charge.late_fee_months_late == 2

    def test_freeze_helper_skips_frozen_charge(self, arrears, make_settlement, db_session, unit_a):
        settlement = make_settlement(1)
        charge = db_session.query(Charge).filter_by(unit_id=unit_a.id, settlement_id=settlement.id).one()

        assert arrears.freeze_late_fee(charge, Decimal("1000"), date(2025, 3, 5)) is True
        assert arrears.freeze_late_fee(charge, Decimal("1000"), date(2025, 6, 5)) is False
        assert charge.late_fee_amount == Decimal("200.00")

    def test_freeze_helper_before_due_date(self, arrears, make_settlement, db_session, unit_a):
        settlement = make_settlement(1)
        charge = db_session.query(Charge).filter_by(unit_id=unit_a.id, settlement_id=settlement.id).one()

        assert arrears.freeze_late_fee(charge, Decimal("1000"), date(2025, 1, 19)) is False
        assert not charge.is_frozen
