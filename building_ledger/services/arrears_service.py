"""Arrears engine: overdue debt per period, lazy late-fee freezing and arrears funding.

A period is in arrears for a unit once its settlement's second due date is
on or before the reference date and principal or late fee is still pending.
The first time such a charge is read with principal pending, its late fee is
computed on that principal and frozen; later reads reuse the snapshot.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, NamedTuple

from sqlalchemy.orm import Session

from building_ledger.models.charge import Charge
from building_ledger.models.payment import Payment, PaymentStatus
from building_ledger.models.settlement import Settlement
from building_ledger.models.unit import Unit
from building_ledger.services import atomic
from building_ledger.services.billing import compute_late_fee, split_arrears_period
from building_ledger.services.charge_ledger import ChargeLedger
from building_ledger.services.errors import NotFoundError
from building_ledger.services.money import ZERO, money_sum, non_negative, round2

if TYPE_CHECKING:
    from building_ledger.services.credit_service import CreditLedgerService

logger = logging.getLogger(__name__)


@dataclass
class ArrearsPeriod:
    """Pending debt of one overdue settlement."""

    charge_id: int
    settlement_id: int
    month: int
    year: int
    due_date2: date | None
    previous_balance: Decimal
    current_fee: Decimal
    original_debt: Decimal
    discount_applied: Decimal
    principal_paid: Decimal
    pending_principal: Decimal
    late_fee_rate: Decimal
    months_late: int
    late_fee_total: Decimal
    late_fee_pending: Decimal
    total_pending: Decimal


@dataclass
class ArrearsSummary:
    """All overdue periods of a unit at a reference date, oldest first."""

    unit_id: int
    reference_date: date
    total_arrears: Decimal = ZERO
    periods: list[ArrearsPeriod] = field(default_factory=list)


@dataclass
class ArrearsAllocation:
    """What one arrears period received from cash and from credit."""

    charge_id: int
    settlement_id: int
    month: int
    year: int
    principal_from_payment: Decimal
    principal_from_credit: Decimal
    late_from_payment: Decimal
    late_from_credit: Decimal
    total_applied: Decimal
    payment_id: int | None = None


@dataclass
class ArrearsApplication:
    """Result of funding a unit's arrears."""

    total_applied: Decimal = ZERO
    total_from_payment: Decimal = ZERO
    total_from_credit: Decimal = ZERO
    remaining_from_payment: Decimal = ZERO
    remaining_from_credit: Decimal = ZERO
    receipt_payment_id: int | None = None
    allocations: list[ArrearsAllocation] = field(default_factory=list)


class OverdueCharge(NamedTuple):
    charge: Charge
    discount_used: Decimal
    pending_principal: Decimal
    pending_late: Decimal


class ArrearsService:
    """Compute and fund a unit's arrears.

    Mutating helpers (freeze, apply_funds, build_summary) work inside the
    caller's transaction; get_unit_arrears_summary is the standalone read
    entry point and commits any freeze it performs.
    """

    def __init__(self, db: Session, credit_ledger: "CreditLedgerService | None" = None):
        """Initialize with database session.

        Args:
            db: SQLAlchemy session
            credit_ledger: Credit ledger used to record DEBIT movements when
                credit funds an arrears period (required by apply_funds)
        """
        self.db = db
        self.charges = ChargeLedger(db)
        self.credit_ledger = credit_ledger

    def freeze_late_fee(self, charge: Charge, pending_principal: Decimal, reference_date: date) -> bool:
        """Freeze the charge's late-fee snapshot if it is due for freezing.

        Returns:
            True if the snapshot was written now, False if not applicable
        """
        settlement = charge.settlement
        if (
            pending_principal <= 0
            or charge.is_frozen
            or settlement.due_date2 is None
            or reference_date < settlement.due_date2
        ):
            return False

        result = compute_late_fee(
            pending_principal,
            settlement.due_date2,
            reference_date,
            settlement.late_fee_rate,
        )
        charge.freeze_late_fee(result.months_late, result.late_fee_amount, reference_date)
        logger.info(
            "Froze late fee: charge_id=%s, unit_id=%s, settlement=%s, principal=%s, months_late=%s, late_fee=%s",
            charge.id,
            charge.unit_id,
            settlement.label,
            pending_principal,
            result.months_late,
            result.late_fee_amount,
        )
        return True

    def overdue_charges(self, unit_id: int, reference_date: date) -> list[OverdueCharge]:
        """Overdue charges with something pending, oldest first (year, month, id)."""
        charges = (
            self.db.query(Charge)
            .join(Charge.settlement)
            .filter(
                Charge.unit_id == unit_id,
                Settlement.due_date2.isnot(None),
                Settlement.due_date2 <= reference_date,
            )
            .order_by(Settlement.year, Settlement.month, Charge.id)
            .all()
        )
        if not charges:
            return []

        discounts = self.charges.discount_map(unit_id, [c.settlement_id for c in charges])
        results = []
        for charge in charges:
            discount_used = discounts.get(charge.settlement_id, ZERO)
            pending_principal = self.charges.pending_principal(charge, discount_used)
            if pending_principal > 0 and not charge.is_frozen:
                self.freeze_late_fee(charge, pending_principal, reference_date)

            pending_late = self.charges.pending_late_fee(charge)
            if pending_principal <= 0 and pending_late <= 0:
                continue
            results.append(OverdueCharge(charge, discount_used, pending_principal, pending_late))
        return results

    def build_summary(self, unit_id: int, reference_date: date) -> ArrearsSummary:
        """Arrears summary inside the caller's transaction (may freeze late fees)."""
        periods = []
        for item in self.overdue_charges(unit_id, reference_date):
            charge = item.charge
            settlement = charge.settlement
            original_debt = round2(charge.previous_balance + charge.current_fee)
            periods.append(
                ArrearsPeriod(
                    charge_id=charge.id,
                    settlement_id=charge.settlement_id,
                    month=settlement.month,
                    year=settlement.year,
                    due_date2=settlement.due_date2,
                    previous_balance=round2(charge.previous_balance),
                    current_fee=round2(charge.current_fee),
                    original_debt=original_debt,
                    discount_applied=item.discount_used,
                    principal_paid=non_negative(
                        min(round2(charge.principal_paid), round2(original_debt - item.discount_used))
                    ),
                    pending_principal=item.pending_principal,
                    late_fee_rate=round2(settlement.late_fee_rate),
                    months_late=charge.late_fee_months_late,
                    late_fee_total=round2(charge.late_fee_amount),
                    late_fee_pending=item.pending_late,
                    total_pending=round2(item.pending_principal + item.pending_late),
                )
            )
        return ArrearsSummary(
            unit_id=unit_id,
            reference_date=reference_date,
            total_arrears=money_sum(p.total_pending for p in periods),
            periods=periods,
        )

    def get_unit_arrears_summary(self, unit_id: int, reference_date: date) -> ArrearsSummary:
        """Get a unit's arrears at a reference date, persisting any new freeze.

        Args:
            unit_id: Unit to summarize
            reference_date: Date the arrears are evaluated at

        Returns:
            ArrearsSummary with per-period detail, oldest first

        Raises:
            NotFoundError: If the unit does not exist
        """
        with atomic(self.db):
            if self.db.get(Unit, unit_id) is None:
                raise NotFoundError(f"Unit {unit_id} not found")
            return self.build_summary(unit_id, reference_date)

    def apply_funds(
        self,
        unit: Unit,
        reference_date: date,
        amount_from_payment=ZERO,
        amount_from_credit=ZERO,
        receipt_ref: str | None = None,
        payment_date: date | None = None,
        notes: str | None = None,
        credit_payment_id: int | None = None,
    ) -> ArrearsApplication:
        """Fund overdue periods oldest first from cash and credit in parallel.

        Within a period cash is used before credit and principal before late
        fee. Cash applications create a synthetic COMPLETED Payment row on the
        period's settlement when a receipt is given. Credit applications
        append a DEBIT movement keyed to ``credit_payment_id``, or, without
        one, to the receipt's first synthetic payment.

        Args:
            unit: Locked unit aggregate
            reference_date: Date arrears are evaluated at
            amount_from_payment: Fresh cash available
            amount_from_credit: Credit available (must not exceed the balance)
            receipt_ref: Receipt for synthetic payments (cash flow only)
            payment_date: Date for synthetic payments
            notes: Notes for synthetic payments
            credit_payment_id: Payment the credit movements belong to
                (defaults to the first synthetic payment)

        Returns:
            ArrearsApplication with per-period allocations and remainders
        """
        remaining_payment = non_negative(amount_from_payment)
        remaining_credit = non_negative(amount_from_credit)
        application = ArrearsApplication(
            remaining_from_payment=remaining_payment,
            remaining_from_credit=remaining_credit,
        )
        receipt_payment_id = credit_payment_id

        for item in self.overdue_charges(unit.id, reference_date):
            if remaining_payment <= 0 and remaining_credit <= 0:
                break

            split = split_arrears_period(
                remaining_payment,
                remaining_credit,
                item.pending_principal,
                item.pending_late,
            )
            if split.total <= 0:
                continue
            remaining_payment = round2(remaining_payment - split.from_payment)
            remaining_credit = round2(remaining_credit - split.from_credit)

            charge = item.charge
            settlement = charge.settlement
            charge.principal_paid = round2(charge.principal_paid + split.principal)
            charge.late_fee_paid = round2(charge.late_fee_paid + split.late_fee)
            self.charges.recompute(charge, item.discount_used)

            synthetic_payment = None
            if split.from_payment > 0 and receipt_ref and payment_date:
                synthetic_payment = Payment(
                    settlement_id=charge.settlement_id,
                    unit_id=unit.id,
                    amount=split.from_payment,
                    receipt_ref=receipt_ref,
                    payment_date=payment_date,
                    notes=notes,
                    discount_applied=ZERO,
                    principal_applied=split.principal_from_payment,
                    late_fee_applied=split.late_from_payment,
                    status=PaymentStatus.COMPLETED,
                )
                self.db.add(synthetic_payment)
                self.db.flush()
                if receipt_payment_id is None:
                    receipt_payment_id = synthetic_payment.id

            if split.from_credit > 0:
                self.credit_ledger.debit(
                    unit,
                    split.from_credit,
                    f"Applied to arrears {settlement.label}",
                    payment_id=receipt_payment_id,
                    charge=charge,
                    late_fee_portion=split.late_from_credit,
                )

            application.allocations.append(
                ArrearsAllocation(
                    charge_id=charge.id,
                    settlement_id=charge.settlement_id,
                    month=settlement.month,
                    year=settlement.year,
                    principal_from_payment=split.principal_from_payment,
                    principal_from_credit=split.principal_from_credit,
                    late_from_payment=split.late_from_payment,
                    late_from_credit=split.late_from_credit,
                    total_applied=split.total,
                    payment_id=synthetic_payment.id if synthetic_payment else None,
                )
            )
            application.total_applied = round2(application.total_applied + split.total)
            application.total_from_payment = round2(application.total_from_payment + split.from_payment)
            application.total_from_credit = round2(application.total_from_credit + split.from_credit)

        application.remaining_from_payment = remaining_payment
        application.remaining_from_credit = remaining_credit
        application.receipt_payment_id = receipt_payment_id
        return application


__all__ = [
    "ArrearsService",
    "ArrearsSummary",
    "ArrearsPeriod",
    "ArrearsAllocation",
    "ArrearsApplication",
    "OverdueCharge",
]
