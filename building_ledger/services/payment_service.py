"""Payment service: recording, allocating and cancelling payments.

A payment against a settlement runs the allocation waterfall in one
transaction:

    previous-period debt -> current-period debt (early-payment discount)
    -> arrears, oldest first -> upcoming periods -> residual credit

The charge-level stages are pure functions in ``billing``; the arrears and
upcoming stages spend the unit's credit through the credit ledger so every
cent that moves between periods leaves a CreditMovement behind.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from building_ledger.models.credit_movement import CreditMovement, MovementType
from building_ledger.models.payment import Payment, PaymentStatus
from building_ledger.models.settlement import Settlement
from building_ledger.services import atomic
from building_ledger.services.arrears_service import ArrearsAllocation, ArrearsService
from building_ledger.services.audit_service import AuditService
from building_ledger.services.billing import discount_stats, plan_charge_payment
from building_ledger.services.charge_ledger import ChargeLedger
from building_ledger.services.credit_service import (
    ChargeSnapshot,
    CreditLedgerService,
    ForwardAllocation,
)
from building_ledger.services.errors import (
    ConsistencyError,
    DataValidationError,
    NotFoundError,
)
from building_ledger.services.locale_service import format_amount
from building_ledger.services.money import ZERO, money_sum, round2, to_decimal

logger = logging.getLogger(__name__)


@dataclass
class AllocationSummary:
    """Where the cash of a recorded payment went."""

    payment_id: int
    unit_id: int
    settlement_id: int
    amount: Decimal
    applied_to_previous: Decimal
    applied_to_current: Decimal
    discount_applied: Decimal
    excess: Decimal
    applied_to_arrears: Decimal
    applied_to_future: Decimal
    arrears_before: Decimal
    arrears_after: Decimal
    credit_balance: Decimal
    charge: ChargeSnapshot
    arrears_allocations: list[ArrearsAllocation] = field(default_factory=list)
    forward_allocations: list[ForwardAllocation] = field(default_factory=list)


@dataclass
class DebtorPaymentResult:
    """Outcome of a payment aimed at a unit's arrears rather than one settlement."""

    unit_id: int
    amount: Decimal
    arrears_before: Decimal
    arrears_after: Decimal
    applied_to_arrears: Decimal
    applied_from_payment: Decimal
    applied_from_credit: Decimal
    applied_to_future: Decimal
    credit_balance: Decimal
    payment_ids: list[int] = field(default_factory=list)
    arrears_allocations: list[ArrearsAllocation] = field(default_factory=list)
    forward_allocations: list[ForwardAllocation] = field(default_factory=list)


@dataclass
class CancellationResult:
    payment_id: int
    unit_id: int
    credit_restored: Decimal
    credit_removed: Decimal
    credit_balance: Decimal
    charge: ChargeSnapshot
    reversed_movement_ids: list[int] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _validate_payment_input(amount, receipt_ref: str) -> tuple[Decimal, str]:
    """Normalize amount and receipt, rejecting unusable values."""
    try:
        amount = round2(to_decimal(amount))
    except (ArithmeticError, ValueError, TypeError):
        raise DataValidationError(f"Invalid amount: {amount!r}") from None
    if not amount.is_finite() or amount <= 0:
        raise DataValidationError("Payment amount must be greater than zero")
    receipt_ref = (receipt_ref or "").strip()
    if not receipt_ref:
        raise DataValidationError("Receipt reference is required")
    return amount, receipt_ref


class PaymentService:
    """Service for payment allocation and cancellation."""

    def __init__(self, db: Session):
        """Initialize with database session.

        Args:
            db: SQLAlchemy session
        """
        self.db = db
        self.charges = ChargeLedger(db)
        self.credit = CreditLedgerService(db)
        self.arrears = ArrearsService(db, self.credit)

    def get_payment(self, payment_id: int) -> Payment:
        payment = self.db.get(Payment, payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment

    def list_payments(self, unit_id: int, settlement_id: int | None = None) -> list[Payment]:
        """Payments of a unit, newest first."""
        stmt = select(Payment).where(Payment.unit_id == unit_id)
        if settlement_id is not None:
            stmt = stmt.where(Payment.settlement_id == settlement_id)
        stmt = stmt.order_by(Payment.payment_date.desc(), Payment.id.desc())
        return list(self.db.execute(stmt).scalars().all())

    def record_payment(
        self,
        unit_id: int,
        settlement_id: int,
        amount,
        receipt_ref: str,
        payment_date: date,
        notes: str | None = None,
        actor_id: int | None = None,
    ) -> AllocationSummary:
        """Record a cash payment for a unit's settlement charge and allocate it.

        Args:
            unit_id: Paying unit
            settlement_id: Settlement the payment is made against
            amount: Cash received
            receipt_ref: Receipt identifier
            payment_date: Date of payment (also the reference date for arrears)
            notes: Optional free text
            actor_id: Operator recording the payment (audit only)

        Returns:
            AllocationSummary

        Raises:
            DataValidationError: Non-positive amount or empty receipt
            NotFoundError: Unit, settlement or charge missing
            ConsistencyError: Unit and settlement belong to different buildings
            ConcurrencyConflictError: The unit changed concurrently; retry
        """
        amount, receipt_ref = _validate_payment_input(amount, receipt_ref)

        with atomic(self.db):
            unit = self.credit.lock_unit(unit_id)
            settlement = self.db.get(Settlement, settlement_id)
            if settlement is None:
                raise NotFoundError(f"Settlement {settlement_id} not found")
            if settlement.building_id != unit.building_id:
                logger.warning(
                    "Rejected payment: unit %s and settlement %s belong to different buildings",
                    unit_id,
                    settlement_id,
                )
                raise ConsistencyError(
                    f"Unit {unit.code} does not belong to the building of settlement {settlement.label}"
                )
            charge = self.charges.get_charge(unit_id, settlement_id)

            arrears_before = self.arrears.build_summary(unit_id, payment_date)

            discount_used = self.charges.discount_used(charge)
            stats = discount_stats(charge.current_fee, discount_used)
            plan = plan_charge_payment(
                amount,
                self.charges.portions(charge, discount_used),
                stats.remaining,
                payment_date,
                settlement.due_date1,
            )

            payment = Payment(
                settlement_id=settlement_id,
                unit_id=unit_id,
                amount=amount,
                receipt_ref=receipt_ref,
                payment_date=payment_date,
                notes=notes,
                discount_applied=plan.discount,
                principal_applied=plan.principal,
                late_fee_applied=ZERO,
                status=PaymentStatus.COMPLETED,
            )
            self.db.add(payment)
            charge.principal_paid = round2(charge.principal_paid + plan.principal)
            self.db.flush()
            self.charges.recompute(charge, round2(discount_used + plan.discount))

            if plan.excess > 0:
                self.credit.credit(
                    unit,
                    plan.excess,
                    f"Overpayment of receipt {receipt_ref} ({format_amount(plan.excess)})",
                    payment_id=payment.id,
                    charge=charge,
                )

            arrears_application = self.arrears.apply_funds(
                unit,
                payment_date,
                amount_from_credit=round2(unit.credit_balance),
                credit_payment_id=payment.id,
            )
            forward = self.credit.apply_to_upcoming(
                unit,
                payment_date,
                round2(unit.credit_balance),
                payment_id=payment.id,
            )
            credit_balance = self.credit.verify_balance(unit)
            arrears_after = self.arrears.build_summary(unit_id, payment_date)

            AuditService.log(
                self.db,
                entity_type="payment",
                entity_id=payment.id,
                action="create",
                actor_id=actor_id,
                changes={
                    "unit_id": unit_id,
                    "settlement_id": settlement_id,
                    "amount": amount,
                    "receipt_ref": receipt_ref,
                    "discount_applied": plan.discount,
                    "excess": plan.excess,
                },
            )

            summary = AllocationSummary(
                payment_id=payment.id,
                unit_id=unit_id,
                settlement_id=settlement_id,
                amount=amount,
                applied_to_previous=plan.to_previous,
                applied_to_current=plan.to_current,
                discount_applied=plan.discount,
                excess=plan.excess,
                applied_to_arrears=arrears_application.total_from_credit,
                applied_to_future=forward.total_applied,
                arrears_before=arrears_before.total_arrears,
                arrears_after=arrears_after.total_arrears,
                credit_balance=credit_balance,
                charge=ChargeSnapshot.from_charge(charge),
                arrears_allocations=arrears_application.allocations,
                forward_allocations=forward.allocations,
            )

        logger.info(
            "Recorded payment: payment_id=%s, unit_id=%s, settlement=%s, amount=%s, "
            "previous=%s, current=%s, discount=%s, excess=%s, credit=%s",
            summary.payment_id,
            unit_id,
            settlement.label,
            amount,
            summary.applied_to_previous,
            summary.applied_to_current,
            summary.discount_applied,
            summary.excess,
            summary.credit_balance,
        )
        return summary

    def record_debtor_payment(
        self,
        building_id: int,
        unit_id: int,
        amount,
        receipt_ref: str,
        payment_date: date,
        notes: str | None = None,
        actor_id: int | None = None,
    ) -> DebtorPaymentResult:
        """Apply cash, together with the unit's existing credit, to its arrears.

        Cash and credit fund each overdue period in parallel (cash first).
        Every period funded with cash gets its own Payment row under the same
        receipt. Cash left over becomes credit, and the credit still
        available then runs the forward pass. Every credit movement of the
        call is keyed to the receipt's first Payment row, so cancelling the
        receipt's payments reverses them.

        Raises:
            DataValidationError: Non-positive amount or empty receipt
            NotFoundError: Unit missing or not part of the building
            ConsistencyError: The unit has no arrears at the payment date
            ConcurrencyConflictError: The unit changed concurrently; retry
        """
        amount, receipt_ref = _validate_payment_input(amount, receipt_ref)

        with atomic(self.db):
            unit = self.credit.lock_unit(unit_id)
            if unit.building_id != building_id:
                logger.warning("Rejected debtor payment: unit %s is not in building %s", unit_id, building_id)
                raise NotFoundError(f"Unit {unit_id} does not belong to building {building_id}")

            arrears_before = self.arrears.build_summary(unit_id, payment_date)
            if arrears_before.total_arrears <= 0:
                logger.warning("Rejected debtor payment: unit %s has no arrears on %s", unit_id, payment_date)
                raise ConsistencyError(
                    f"Unit {unit.code} has no arrears on {payment_date.isoformat()}; "
                    "record the payment against a settlement instead"
                )

            application = self.arrears.apply_funds(
                unit,
                payment_date,
                amount_from_payment=amount,
                amount_from_credit=round2(unit.credit_balance),
                receipt_ref=receipt_ref,
                payment_date=payment_date,
                notes=notes,
            )
            receipt_payment_id = application.receipt_payment_id
            if application.remaining_from_payment > 0:
                self.credit.credit(
                    unit,
                    application.remaining_from_payment,
                    f"Surplus of arrears payment, receipt {receipt_ref}",
                    payment_id=receipt_payment_id,
                )

            forward = self.credit.apply_to_upcoming(
                unit,
                payment_date,
                round2(unit.credit_balance),
                payment_id=receipt_payment_id,
            )
            credit_balance = self.credit.verify_balance(unit)
            arrears_after = self.arrears.build_summary(unit_id, payment_date)

            payment_ids = [a.payment_id for a in application.allocations if a.payment_id is not None]
            for payment_id in payment_ids:
                AuditService.log(
                    self.db,
                    entity_type="payment",
                    entity_id=payment_id,
                    action="create",
                    actor_id=actor_id,
                    changes={"unit_id": unit_id, "receipt_ref": receipt_ref, "source": "arrears"},
                )

            result = DebtorPaymentResult(
                unit_id=unit_id,
                amount=amount,
                arrears_before=arrears_before.total_arrears,
                arrears_after=arrears_after.total_arrears,
                applied_to_arrears=application.total_applied,
                applied_from_payment=application.total_from_payment,
                applied_from_credit=application.total_from_credit,
                applied_to_future=forward.total_applied,
                credit_balance=credit_balance,
                payment_ids=payment_ids,
                arrears_allocations=application.allocations,
                forward_allocations=forward.allocations,
            )

        logger.info(
            "Recorded debtor payment: unit_id=%s, amount=%s, arrears %s -> %s, credit=%s",
            unit_id,
            amount,
            result.arrears_before,
            result.arrears_after,
            result.credit_balance,
        )
        return result

    def cancel_payment(self, payment_id: int, actor_id: int | None = None) -> CancellationResult:
        """Cancel a payment and undo everything it changed.

        The payment's own principal and late-fee contribution is removed from
        its charge, and the discount it granted drops out because only
        COMPLETED payments count. Credit movements the payment produced are
        not deleted: each active DEBIT is undone on the charge it funded and
        re-credited, each active CREDIT (overpayment) is taken back, and the
        originals are marked reversed.

        Raises:
            NotFoundError: Payment missing
            ConsistencyError: Already cancelled, or credit it created has since
                been spent elsewhere
            ConcurrencyConflictError: The unit changed concurrently; retry
        """
        with atomic(self.db):
            payment = self.get_payment(payment_id)
            unit = self.credit.lock_unit(payment.unit_id)
            if payment.status == PaymentStatus.CANCELLED:
                logger.warning("Rejected cancellation: payment %s already cancelled", payment_id)
                raise ConsistencyError(f"Payment {payment_id} is already cancelled")

            movements = list(
                self.db.execute(
                    select(CreditMovement)
                    .where(
                        CreditMovement.payment_id == payment_id,
                        CreditMovement.reversed_at.is_(None),
                    )
                    .order_by(CreditMovement.id)
                )
                .scalars()
                .all()
            )
            debits = [m for m in movements if m.movement_type == MovementType.DEBIT]
            credits = [m for m in movements if m.movement_type == MovementType.CREDIT]
            credit_restored = money_sum(m.amount for m in debits)
            credit_removed = money_sum(m.amount for m in credits)

            if round2(unit.credit_balance + credit_restored - credit_removed) < 0:
                logger.warning(
                    "Rejected cancellation: credit generated by payment %s was already used",
                    payment_id,
                )
                raise ConsistencyError(
                    f"Credit generated by payment {payment_id} has already been applied elsewhere"
                )

            now = _utcnow()
            payment.status = PaymentStatus.CANCELLED
            payment.cancelled_at = now

            charge = self.charges.get_charge(payment.unit_id, payment.settlement_id)
            charge.principal_paid = round2(charge.principal_paid - payment.principal_applied)
            charge.late_fee_paid = round2(charge.late_fee_paid - payment.late_fee_applied)

            touched = {charge.id: charge}
            for movement in debits:
                funded = movement.charge
                if funded is not None:
                    late_portion = round2(movement.late_fee_portion)
                    funded.principal_paid = round2(funded.principal_paid - (movement.amount - late_portion))
                    funded.late_fee_paid = round2(funded.late_fee_paid - late_portion)
                    touched[funded.id] = funded
                movement.reversed_at = now

            for movement in credits:
                movement.reversed_at = now

            self.db.flush()
            for touched_charge in touched.values():
                self.charges.recompute(touched_charge)

            if credit_restored > 0:
                self.credit.credit(
                    unit,
                    credit_restored,
                    f"Reversal of credit applied by cancelled receipt {payment.receipt_ref} "
                    f"({format_amount(credit_restored)})",
                    payment_id=payment_id,
                )
            if credit_removed > 0:
                self.credit.debit(
                    unit,
                    credit_removed,
                    f"Reversal of overpayment of cancelled receipt {payment.receipt_ref} "
                    f"({format_amount(credit_removed)})",
                    payment_id=payment_id,
                )
            credit_balance = self.credit.verify_balance(unit)

            AuditService.log(
                self.db,
                entity_type="payment",
                entity_id=payment_id,
                action="cancel",
                actor_id=actor_id,
                changes={
                    "amount": payment.amount,
                    "principal_applied": payment.principal_applied,
                    "late_fee_applied": payment.late_fee_applied,
                    "discount_applied": payment.discount_applied,
                    "credit_restored": credit_restored,
                    "credit_removed": credit_removed,
                },
            )

            result = CancellationResult(
                payment_id=payment_id,
                unit_id=payment.unit_id,
                credit_restored=credit_restored,
                credit_removed=credit_removed,
                credit_balance=credit_balance,
                charge=ChargeSnapshot.from_charge(charge),
                reversed_movement_ids=[m.id for m in movements],
            )

        logger.info(
            "Cancelled payment: payment_id=%s, unit_id=%s, credit_restored=%s, credit_removed=%s, credit=%s",
            payment_id,
            result.unit_id,
            credit_restored,
            credit_removed,
            result.credit_balance,
        )
        return result


__all__ = [
    "PaymentService",
    "AllocationSummary",
    "DebtorPaymentResult",
    "CancellationResult",
]
