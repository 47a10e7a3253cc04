"""Pure billing arithmetic: late fees, charge portions, discounts and allocation stages.

Nothing here touches the database. The services compose these functions
into the payment waterfall:

    previous-period debt -> current-period debt (with early-payment discount)
    -> arrears (oldest first, principal before late fee) -> future periods
    -> residual credit

Each stage takes what is still available and returns (applied, remainder),
so ordering and tie-breaks can be tested in isolation.
"""

from datetime import date
from decimal import Decimal
from typing import NamedTuple

from building_ledger.models.charge import ChargeStatus
from building_ledger.services.money import ZERO, non_negative, round2, to_decimal

EARLY_PAYMENT_DISCOUNT_RATE = Decimal("0.10")
DEFAULT_LATE_FEE_RATE = Decimal("10")


class LateFeeResult(NamedTuple):
    """Late fee computed for a principal at a reference date."""

    months_late: int
    late_fee_amount: Decimal
    total_with_late: Decimal


class ChargePortions(NamedTuple):
    """Outstanding split of a charge between carried-in and current debt."""

    previous_outstanding: Decimal
    current_paid_portion: Decimal
    current_outstanding_nominal: Decimal


class DiscountStats(NamedTuple):
    """Early-payment discount state of a charge."""

    cap: Decimal
    used: Decimal
    remaining: Decimal


class StageResult(NamedTuple):
    """Outcome of one allocation stage."""

    applied: Decimal
    remainder: Decimal


class ChargePaymentPlan(NamedTuple):
    """How a cash payment splits over its own charge."""

    to_previous: Decimal
    to_current: Decimal
    discount: Decimal
    excess: Decimal

    @property
    def principal(self) -> Decimal:
        return round2(self.to_previous + self.to_current)


class ArrearsSplit(NamedTuple):
    """Funding of one overdue period from cash and from credit."""

    principal_from_payment: Decimal
    late_from_payment: Decimal
    principal_from_credit: Decimal
    late_from_credit: Decimal

    @property
    def from_payment(self) -> Decimal:
        return round2(self.principal_from_payment + self.late_from_payment)

    @property
    def from_credit(self) -> Decimal:
        return round2(self.principal_from_credit + self.late_from_credit)

    @property
    def principal(self) -> Decimal:
        return round2(self.principal_from_payment + self.principal_from_credit)

    @property
    def late_fee(self) -> Decimal:
        return round2(self.late_from_payment + self.late_from_credit)

    @property
    def total(self) -> Decimal:
        return round2(self.principal + self.late_fee)


def months_between(start: date, end: date) -> int:
    """Calendar-month difference between two dates; day of month is ignored."""
    return (end.year - start.year) * 12 + (end.month - start.month)


def compute_late_fee(
    principal,
    second_due_date: date | None,
    reference_date: date,
    rate_percent=DEFAULT_LATE_FEE_RATE,
) -> LateFeeResult:
    """Compute months late and a linear (non-compounding) late fee.

    Args:
        principal: Pending principal the fee is charged on
        second_due_date: Settlement's second due date (None: no fee accrues)
        reference_date: Date the fee is evaluated at
        rate_percent: Late fee percent per month

    Returns:
        LateFeeResult(months_late, late_fee_amount, total_with_late)

    A reference date anywhere in the due month counts 0 months; any date in
    the following calendar month counts 1, regardless of the day.
    """
    principal = round2(principal)
    if second_due_date is None:
        return LateFeeResult(0, ZERO, principal)

    months_late = max(0, months_between(second_due_date, reference_date))
    rate = max(ZERO, to_decimal(rate_percent)) / Decimal(100)
    late_fee_amount = round2(principal * rate * months_late)
    return LateFeeResult(months_late, late_fee_amount, round2(principal + late_fee_amount))


def charge_portions(
    previous_balance,
    current_fee,
    principal_paid,
    discount_applied=ZERO,
) -> ChargePortions:
    """Split a charge's outstanding principal; payments retire the oldest debt first."""
    previous = non_negative(previous_balance)
    current = non_negative(current_fee)
    paid = non_negative(principal_paid)
    discount = non_negative(discount_applied)

    previous_outstanding = non_negative(previous - paid)
    current_paid_portion = non_negative(paid - previous)
    current_outstanding_nominal = non_negative(current - current_paid_portion - discount)
    return ChargePortions(previous_outstanding, current_paid_portion, current_outstanding_nominal)


def discount_cap(current_fee) -> Decimal:
    return round2(non_negative(current_fee) * EARLY_PAYMENT_DISCOUNT_RATE)


def discount_stats(current_fee, discount_used) -> DiscountStats:
    cap = discount_cap(current_fee)
    used = min(cap, non_negative(discount_used))
    return DiscountStats(cap, used, non_negative(cap - used))


def early_payment_discount(
    amount_for_current,
    payment_date: date,
    first_due_date: date | None,
    current_outstanding_nominal,
    discount_remaining,
) -> Decimal:
    """Discount earned by the current-period part of a payment.

    Only payments made on or before the first due date that actually reach
    the current period earn it, up to min(remaining cap, outstanding current debt).
    """
    amount_for_current = round2(amount_for_current)
    current_outstanding_nominal = round2(current_outstanding_nominal)
    discount_remaining = round2(discount_remaining)
    if (
        first_due_date is None
        or payment_date > first_due_date
        or amount_for_current <= 0
        or current_outstanding_nominal <= 0
        or discount_remaining <= 0
    ):
        return ZERO
    return min(discount_remaining, current_outstanding_nominal)


def take(available, needed) -> StageResult:
    """Apply up to ``needed`` out of ``available``."""
    available = non_negative(available)
    applied = min(available, non_negative(needed))
    return StageResult(applied, round2(available - applied))


def plan_charge_payment(
    amount,
    portions: ChargePortions,
    discount_remaining,
    payment_date: date,
    first_due_date: date | None,
) -> ChargePaymentPlan:
    """Run the previous-period and current-period stages for a cash payment."""
    previous_stage = take(amount, portions.previous_outstanding)
    discount = early_payment_discount(
        previous_stage.remainder,
        payment_date,
        first_due_date,
        portions.current_outstanding_nominal,
        discount_remaining,
    )
    current_needed = non_negative(portions.current_outstanding_nominal - discount)
    current_stage = take(previous_stage.remainder, current_needed)
    return ChargePaymentPlan(
        to_previous=previous_stage.applied,
        to_current=current_stage.applied,
        discount=discount,
        excess=current_stage.remainder,
    )


def split_arrears_period(
    payment_available,
    credit_available,
    pending_principal,
    pending_late,
) -> ArrearsSplit:
    """Fund one overdue period: cash first, then credit; principal before late fee."""
    pending_principal = non_negative(pending_principal)
    pending_late = non_negative(pending_late)
    pending_total = round2(pending_principal + pending_late)

    from_payment = take(payment_available, pending_total).applied
    from_credit = take(credit_available, pending_total - from_payment).applied

    principal_from_payment = min(from_payment, pending_principal)
    pending_principal = round2(pending_principal - principal_from_payment)
    late_from_payment = min(round2(from_payment - principal_from_payment), pending_late)
    pending_late = round2(pending_late - late_from_payment)

    principal_from_credit = min(from_credit, pending_principal)
    late_from_credit = min(round2(from_credit - principal_from_credit), pending_late)

    return ArrearsSplit(
        principal_from_payment,
        late_from_payment,
        principal_from_credit,
        late_from_credit,
    )


def raw_total_to_pay(previous_balance, current_fee, discount_applied, principal_paid) -> Decimal:
    """previous + fee - discount - principal paid, not clamped."""
    return round2(
        to_decimal(previous_balance)
        + to_decimal(current_fee)
        - to_decimal(discount_applied)
        - to_decimal(principal_paid)
    )


def charge_status(
    total_to_pay,
    late_fee_pending,
    principal_paid,
    late_fee_paid,
) -> ChargeStatus:
    """PAID once principal and late fee are settled, PARTIAL once anything was paid."""
    if round2(total_to_pay) <= 0 and round2(late_fee_pending) <= 0:
        return ChargeStatus.PAID
    if round2(principal_paid) > 0 or round2(late_fee_paid) > 0:
        return ChargeStatus.PARTIAL
    return ChargeStatus.PENDING
