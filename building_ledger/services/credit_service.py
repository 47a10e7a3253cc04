"""Credit ledger service: a unit's overpayment credit and its movement log.

The unit row is the aggregate root. Its ``credit_balance`` is changed only
through :meth:`CreditLedgerService.record_movement`, which appends the
matching CreditMovement in the same step, so the balance always equals
sum(CREDIT) - sum(DEBIT) over the log.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from building_ledger.models.charge import Charge, ChargeStatus
from building_ledger.models.credit_movement import CreditMovement, MovementType
from building_ledger.models.settlement import Settlement
from building_ledger.models.unit import Unit
from building_ledger.services import atomic
from building_ledger.services.arrears_service import ArrearsAllocation, ArrearsService
from building_ledger.services.audit_service import AuditService
from building_ledger.services.charge_ledger import ChargeLedger
from building_ledger.services.config import settings
from building_ledger.services.errors import (
    DataValidationError,
    LedgerInvariantError,
    NotFoundError,
)
from building_ledger.services.locale_service import format_amount
from building_ledger.services.money import ZERO, money_sum, non_negative, round2, to_decimal

logger = logging.getLogger(__name__)


@dataclass
class ForwardAllocation:
    """Credit applied to one not-yet-due charge."""

    charge_id: int
    settlement_id: int
    month: int
    year: int
    applied: Decimal
    total_to_pay: Decimal
    status: ChargeStatus


@dataclass
class ForwardApplication:
    total_applied: Decimal = ZERO
    remaining: Decimal = ZERO
    allocations: list[ForwardAllocation] = field(default_factory=list)


@dataclass
class ChargeSnapshot:
    """Point-in-time view of a charge returned to callers."""

    charge_id: int
    settlement_id: int
    unit_id: int
    previous_balance: Decimal
    current_fee: Decimal
    principal_paid: Decimal
    total_to_pay: Decimal
    status: ChargeStatus
    late_fee_amount: Decimal
    late_fee_paid: Decimal

    @classmethod
    def from_charge(cls, charge: Charge) -> "ChargeSnapshot":
        return cls(
            charge_id=charge.id,
            settlement_id=charge.settlement_id,
            unit_id=charge.unit_id,
            previous_balance=round2(charge.previous_balance),
            current_fee=round2(charge.current_fee),
            principal_paid=round2(charge.principal_paid),
            total_to_pay=round2(charge.total_to_pay),
            status=charge.status,
            late_fee_amount=round2(charge.late_fee_amount),
            late_fee_paid=round2(charge.late_fee_paid),
        )


@dataclass
class CreditSyncResult:
    """Result of applying a unit's existing credit balance."""

    unit_id: int
    credit_before: Decimal = ZERO
    credit_after: Decimal = ZERO
    applied_to_arrears: Decimal = ZERO
    applied_to_future: Decimal = ZERO
    applied_to_current: Decimal = ZERO
    arrears_allocations: list[ArrearsAllocation] = field(default_factory=list)
    forward_allocations: list[ForwardAllocation] = field(default_factory=list)
    charge: ChargeSnapshot | None = None

    @property
    def total_applied(self) -> Decimal:
        return round2(self.applied_to_arrears + self.applied_to_future)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditLedgerService:
    """Service for the per-unit credit ledger."""

    def __init__(self, db: Session):
        """Initialize with database session.

        Args:
            db: SQLAlchemy session
        """
        self.db = db
        self.charges = ChargeLedger(db)

    # ------------------------------------------------------------------
    # Aggregate access
    # ------------------------------------------------------------------

    def lock_unit(self, unit_id: int) -> Unit:
        """Load the unit and bump its version before any ledger write.

        The flush issues ``UPDATE ... WHERE version = :seen``; if another
        transaction committed a change to the unit since it was loaded, the
        flush fails with StaleDataError, which atomic() reports as a
        ConcurrencyConflictError.

        Raises:
            NotFoundError: If the unit does not exist
        """
        unit = self.db.get(Unit, unit_id)
        if unit is None:
            raise NotFoundError(f"Unit {unit_id} not found")
        unit.ledger_updated_at = _utcnow()
        self.db.flush()
        return unit

    def get_balance(self, unit_id: int) -> Decimal:
        unit = self.db.get(Unit, unit_id)
        if unit is None:
            raise NotFoundError(f"Unit {unit_id} not found")
        return round2(unit.credit_balance)

    # ------------------------------------------------------------------
    # Movements
    # ------------------------------------------------------------------

    def record_movement(
        self,
        unit: Unit,
        movement_type: MovementType,
        amount,
        description: str,
        payment_id: int | None = None,
        charge: Charge | None = None,
        settlement_id: int | None = None,
        late_fee_portion=ZERO,
    ) -> CreditMovement:
        """Append a movement and adjust the unit's balance by the same amount.

        Raises:
            LedgerInvariantError: If the amount is not positive or a DEBIT
                would take the balance below zero
        """
        amount = round2(amount)
        if amount <= 0:
            raise LedgerInvariantError(f"Credit movement amount must be positive, got {amount}")

        balance = round2(unit.credit_balance)
        if movement_type == MovementType.DEBIT:
            if amount > balance:
                logger.error(
                    "Credit debit exceeds balance: unit_id=%s, balance=%s, amount=%s",
                    unit.id,
                    balance,
                    amount,
                )
                raise LedgerInvariantError(
                    f"Unit {unit.id} credit balance {balance} cannot cover {amount}"
                )
            unit.credit_balance = round2(balance - amount)
        else:
            unit.credit_balance = round2(balance + amount)

        if charge is not None and settlement_id is None:
            settlement_id = charge.settlement_id

        movement = CreditMovement(
            unit_id=unit.id,
            payment_id=payment_id,
            settlement_id=settlement_id,
            charge_id=charge.id if charge is not None else None,
            amount=amount,
            late_fee_portion=round2(late_fee_portion),
            movement_type=movement_type,
            description=description,
        )
        self.db.add(movement)
        self.db.flush()
        return movement

    def credit(self, unit: Unit, amount, description: str, **kwargs) -> CreditMovement:
        return self.record_movement(unit, MovementType.CREDIT, amount, description, **kwargs)

    def debit(self, unit: Unit, amount, description: str, **kwargs) -> CreditMovement:
        return self.record_movement(unit, MovementType.DEBIT, amount, description, **kwargs)

    def movements_total(self, unit_id: int) -> Decimal:
        """Signed sum of every movement of the unit (reversed ones included)."""
        stmt = (
            select(CreditMovement.movement_type, func.sum(CreditMovement.amount))
            .where(CreditMovement.unit_id == unit_id)
            .group_by(CreditMovement.movement_type)
        )
        totals = {movement_type: round2(total or 0) for movement_type, total in self.db.execute(stmt).all()}
        return round2(totals.get(MovementType.CREDIT, ZERO) - totals.get(MovementType.DEBIT, ZERO))

    def verify_balance(self, unit: Unit) -> Decimal:
        """Check the stored balance against the movement log.

        Raises:
            LedgerInvariantError: If the two disagree or the balance is negative
        """
        self.db.flush()
        expected = self.movements_total(unit.id)
        balance = round2(unit.credit_balance)
        if balance < 0 or balance != expected:
            logger.error(
                "Credit ledger drift: unit_id=%s, stored=%s, movements=%s",
                unit.id,
                balance,
                expected,
            )
            raise LedgerInvariantError(
                f"Unit {unit.id} credit balance {balance} does not match movements total {expected}"
            )
        return balance

    def list_movements(self, unit_id: int, limit: int | None = None) -> list[CreditMovement]:
        """Most recent movements of a unit, newest first.

        Args:
            unit_id: Unit whose log is listed
            limit: Max rows (default and cap come from settings)
        """
        if limit is None:
            limit = settings.credit_movements_default_limit
        limit = max(1, min(int(limit), settings.credit_movements_max_limit))
        stmt = (
            select(CreditMovement)
            .where(CreditMovement.unit_id == unit_id)
            .order_by(CreditMovement.created_at.desc(), CreditMovement.id.desc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    # ------------------------------------------------------------------
    # Applying credit
    # ------------------------------------------------------------------

    def upcoming_charges(self, unit_id: int, reference_date: date) -> list[Charge]:
        """Open charges not yet due at the reference date, oldest first.

        A charge is upcoming when its second due date is on or after the
        reference date; without a second due date, when its period is the
        reference month or later.
        """
        charges = (
            self.db.query(Charge)
            .join(Charge.settlement)
            .filter(
                Charge.unit_id == unit_id,
                Charge.total_to_pay > 0,
                Charge.status != ChargeStatus.PAID,
            )
            .order_by(Settlement.year, Settlement.month, Charge.id)
            .all()
        )
        reference_month = date(reference_date.year, reference_date.month, 1)
        upcoming = []
        for charge in charges:
            settlement = charge.settlement
            if settlement.due_date2 is not None:
                if settlement.due_date2 >= reference_date:
                    upcoming.append(charge)
            elif date(settlement.year, settlement.month, 1) >= reference_month:
                upcoming.append(charge)
        return upcoming

    def apply_to_upcoming(
        self,
        unit: Unit,
        reference_date: date,
        amount,
        payment_id: int | None = None,
    ) -> ForwardApplication:
        """Forward pass: spend ``amount`` of the unit's credit on upcoming charges.

        Each application raises the charge's principal paid, recomputes its
        total and status and appends a DEBIT movement.
        """
        remaining = min(non_negative(amount), round2(unit.credit_balance))
        result = ForwardApplication(remaining=remaining)
        if remaining <= 0:
            return result

        charges = self.upcoming_charges(unit.id, reference_date)
        discounts = self.charges.discount_map(unit.id, [c.settlement_id for c in charges])
        for charge in charges:
            if remaining <= 0:
                break
            applied = min(remaining, round2(charge.total_to_pay))
            if applied <= 0:
                continue

            settlement = charge.settlement
            charge.principal_paid = round2(charge.principal_paid + applied)
            self.charges.recompute(charge, discounts.get(charge.settlement_id, ZERO))
            self.debit(
                unit,
                applied,
                f"Applied to upcoming period {settlement.label}",
                payment_id=payment_id,
                charge=charge,
            )
            remaining = round2(remaining - applied)
            result.allocations.append(
                ForwardAllocation(
                    charge_id=charge.id,
                    settlement_id=charge.settlement_id,
                    month=settlement.month,
                    year=settlement.year,
                    applied=applied,
                    total_to_pay=round2(charge.total_to_pay),
                    status=charge.status,
                )
            )

        result.total_applied = money_sum(a.applied for a in result.allocations)
        result.remaining = remaining
        return result

    def apply_available_credit(
        self,
        unit_id: int,
        reference_date: date,
        settlement_id: int | None = None,
    ) -> CreditSyncResult:
        """Spend the unit's existing credit on arrears, then on upcoming charges.

        Args:
            unit_id: Unit whose credit is applied
            reference_date: Date arrears and upcoming charges are evaluated at
            settlement_id: Optional settlement to report on (amount applied to
                it and its charge snapshot)

        Returns:
            CreditSyncResult

        Raises:
            NotFoundError: If the unit does not exist
            ConcurrencyConflictError: If the unit changed concurrently
        """
        with atomic(self.db):
            unit = self.lock_unit(unit_id)
            credit_before = round2(unit.credit_balance)
            result = CreditSyncResult(
                unit_id=unit_id,
                credit_before=credit_before,
                credit_after=credit_before,
            )

            if credit_before > 0:
                arrears = ArrearsService(self.db, self)
                application = arrears.apply_funds(
                    unit,
                    reference_date,
                    amount_from_credit=credit_before,
                )
                forward = self.apply_to_upcoming(unit, reference_date, round2(unit.credit_balance))

                result.applied_to_arrears = application.total_from_credit
                result.applied_to_future = forward.total_applied
                result.arrears_allocations = application.allocations
                result.forward_allocations = forward.allocations
                result.credit_after = self.verify_balance(unit)

                if settlement_id is not None:
                    result.applied_to_current = money_sum(
                        [a.total_applied for a in application.allocations if a.settlement_id == settlement_id]
                        + [a.applied for a in forward.allocations if a.settlement_id == settlement_id]
                    )

            if settlement_id is not None:
                charge = (
                    self.db.query(Charge)
                    .filter(Charge.unit_id == unit_id, Charge.settlement_id == settlement_id)
                    .first()
                )
                if charge is not None:
                    result.charge = ChargeSnapshot.from_charge(charge)

        if result.total_applied > 0:
            logger.info(
                "Applied credit: unit_id=%s, to_arrears=%s, to_future=%s, balance=%s",
                unit_id,
                result.applied_to_arrears,
                result.applied_to_future,
                result.credit_after,
            )
        return result

    # ------------------------------------------------------------------
    # Manual adjustments
    # ------------------------------------------------------------------

    def record_manual_adjustment(
        self,
        unit_id: int,
        amount,
        direction: MovementType | str,
        description: str,
        actor_id: int | None = None,
    ) -> CreditMovement:
        """Credit or debit a unit's balance by hand (e.g. refund, correction).

        Raises:
            DataValidationError: If the amount is not positive, the direction is
                unknown, the description is empty or a DEBIT exceeds the balance
            NotFoundError: If the unit does not exist
        """
        try:
            movement_type = MovementType(direction)
        except ValueError:
            raise DataValidationError(f"Unknown credit direction: {direction!r}") from None

        amount = round2(to_decimal(amount))
        if amount <= 0:
            raise DataValidationError("Adjustment amount must be positive")
        description = (description or "").strip()
        if not description:
            raise DataValidationError("Adjustment description is required")

        with atomic(self.db):
            unit = self.lock_unit(unit_id)
            if movement_type == MovementType.DEBIT and amount > round2(unit.credit_balance):
                logger.warning(
                    "Rejected manual debit: unit_id=%s, balance=%s, amount=%s",
                    unit_id,
                    unit.credit_balance,
                    amount,
                )
                raise DataValidationError(
                    f"Debit {format_amount(amount)} exceeds available credit "
                    f"{format_amount(unit.credit_balance)}"
                )
            movement = self.record_movement(unit, movement_type, amount, description)
            self.verify_balance(unit)
            AuditService.log(
                self.db,
                entity_type="credit_movement",
                entity_id=movement.id,
                action="manual_adjustment",
                actor_id=actor_id,
                changes={
                    "unit_id": unit_id,
                    "direction": movement_type.value,
                    "amount": amount,
                    "balance": unit.credit_balance,
                },
            )

        logger.info(
            "Manual credit adjustment: unit_id=%s, direction=%s, amount=%s, balance=%s",
            unit_id,
            movement_type.value,
            amount,
            unit.credit_balance,
        )
        return movement


__all__ = [
    "CreditLedgerService",
    "CreditSyncResult",
    "ChargeSnapshot",
    "ForwardAllocation",
    "ForwardApplication",
]
