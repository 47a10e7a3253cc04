"""Settlement service: monthly billing periods and their per-unit charges."""

import logging
from datetime import date
from decimal import Decimal
from typing import NamedTuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from building_ledger.models.building import Building
from building_ledger.models.charge import Charge
from building_ledger.models.credit_movement import CreditMovement
from building_ledger.models.payment import Payment, PaymentStatus
from building_ledger.models.settlement import Settlement
from building_ledger.models.unit import Unit
from building_ledger.services import atomic
from building_ledger.services.audit_service import AuditService
from building_ledger.services.billing import charge_status
from building_ledger.services.config import settings
from building_ledger.services.errors import (
    ConsistencyError,
    DataValidationError,
    NotFoundError,
)
from building_ledger.services.locale_service import format_share
from building_ledger.services.money import ZERO, round2, to_decimal

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


class SettlementCharges(NamedTuple):
    settlement: Settlement | None
    charges: list[Charge]


class SettlementService:
    """Service for creating, listing and deleting settlements."""

    def __init__(self, db: Session):
        self.db = db

    def get_settlement(self, settlement_id: int) -> Settlement:
        settlement = self.db.get(Settlement, settlement_id)
        if settlement is None:
            raise NotFoundError(f"Settlement {settlement_id} not found")
        return settlement

    def list_settlements(self, building_id: int) -> list[Settlement]:
        """Settlements of a building, newest period first."""
        stmt = (
            select(Settlement)
            .where(Settlement.building_id == building_id)
            .order_by(Settlement.year.desc(), Settlement.month.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def get_settlement_charges(self, building_id: int, month: int, year: int) -> SettlementCharges:
        """Settlement for a building period and its charges ordered by unit code.

        Returns ``SettlementCharges(None, [])`` when the period was never billed.
        """
        settlement = (
            self.db.query(Settlement)
            .filter(
                Settlement.building_id == building_id,
                Settlement.month == month,
                Settlement.year == year,
            )
            .first()
        )
        if settlement is None:
            return SettlementCharges(None, [])

        charges = (
            self.db.query(Charge)
            .join(Charge.unit)
            .filter(Charge.settlement_id == settlement.id)
            .order_by(Unit.code)
            .all()
        )
        return SettlementCharges(settlement, charges)

    def create_settlement(
        self,
        building_id: int,
        month: int,
        year: int,
        total_expense,
        due_date1: date | None = None,
        due_date2: date | None = None,
        late_fee_rate=None,
        previous_balances: dict[int, Decimal] | None = None,
        actor_id: int | None = None,
    ) -> Settlement:
        """Create a settlement and one charge per unit of the building.

        Each unit's fee is ``round2(total_expense * percentage / 100)``.

        Args:
            building_id: Building being billed
            month: Billing month (1-12)
            year: Billing year
            total_expense: Total building expense (> 0)
            due_date1: Early-payment discount deadline
            due_date2: Late fees accrue after this date
            late_fee_rate: Percent per month (default from settings)
            previous_balances: Optional opening balance per unit id
            actor_id: Operator creating the settlement (audit only)

        Returns:
            Created Settlement with its charges

        Raises:
            DataValidationError: Invalid period, amount, dates, rate or unit shares
            NotFoundError: Building missing
            ConsistencyError: The period is already billed
        """
        if not 1 <= int(month) <= 12:
            raise DataValidationError(f"Month must be between 1 and 12, got {month}")
        if int(year) <= 0:
            raise DataValidationError(f"Invalid year: {year}")
        total_expense = round2(to_decimal(total_expense))
        if total_expense <= 0:
            raise DataValidationError("Total expense must be greater than zero")
        if due_date1 and due_date2 and due_date1 > due_date2:
            raise DataValidationError("First due date cannot be after the second due date")
        if late_fee_rate is None:
            late_fee_rate = settings.default_late_fee_rate
        late_fee_rate = round2(to_decimal(late_fee_rate))
        if late_fee_rate < 0:
            raise DataValidationError("Late fee rate cannot be negative")
        previous_balances = {int(k): round2(to_decimal(v)) for k, v in (previous_balances or {}).items()}
        if any(balance < 0 for balance in previous_balances.values()):
            raise DataValidationError("Previous balances cannot be negative")

        with atomic(self.db):
            building = self.db.get(Building, building_id)
            if building is None:
                raise NotFoundError(f"Building {building_id} not found")

            units = self.db.query(Unit).filter(Unit.building_id == building_id).order_by(Unit.code).all()
            if not units:
                raise DataValidationError(f"Building {building.name} has no units")
            total_percentage = sum((to_decimal(u.percentage) for u in units), Decimal("0"))
            if total_percentage > HUNDRED:
                raise DataValidationError(
                    f"Unit percentages of building {building.name} add up to {format_share(total_percentage)}"
                )
            unknown = set(previous_balances) - {u.id for u in units}
            if unknown:
                raise DataValidationError(
                    f"Previous balances given for units outside the building: {sorted(unknown)}"
                )

            existing = (
                self.db.query(Settlement)
                .filter(
                    Settlement.building_id == building_id,
                    Settlement.month == month,
                    Settlement.year == year,
                )
                .first()
            )
            if existing is not None:
                logger.warning("Rejected duplicate settlement %s for building %s", existing.label, building_id)
                raise ConsistencyError(f"Settlement {month}/{year} already exists for {building.name}")

            settlement = Settlement(
                building_id=building_id,
                month=month,
                year=year,
                total_expense=total_expense,
                due_date1=due_date1,
                due_date2=due_date2,
                late_fee_rate=late_fee_rate,
            )
            self.db.add(settlement)
            self.db.flush()

            for unit in units:
                current_fee = round2(total_expense * to_decimal(unit.percentage) / HUNDRED)
                previous_balance = previous_balances.get(unit.id, ZERO)
                total_to_pay = round2(previous_balance + current_fee)
                self.db.add(
                    Charge(
                        settlement_id=settlement.id,
                        unit_id=unit.id,
                        previous_balance=previous_balance,
                        current_fee=current_fee,
                        principal_paid=ZERO,
                        total_to_pay=total_to_pay,
                        status=charge_status(total_to_pay, ZERO, ZERO, ZERO),
                    )
                )

            AuditService.log(
                self.db,
                entity_type="settlement",
                entity_id=settlement.id,
                action="create",
                actor_id=actor_id,
                changes={
                    "building_id": building_id,
                    "period": settlement.label,
                    "total_expense": total_expense,
                    "units": len(units),
                },
            )

        logger.info(
            "Created settlement: settlement_id=%s, building_id=%s, period=%s/%s, total=%s, charges=%s",
            settlement.id,
            building_id,
            month,
            year,
            total_expense,
            len(units),
        )
        return settlement

    def delete_settlement(self, settlement_id: int, actor_id: int | None = None) -> None:
        """Delete a settlement and its charges.

        Cancelled payments recorded against it go with it.

        Raises:
            NotFoundError: Settlement missing
            ConsistencyError: A COMPLETED payment references the settlement, or a
                credit movement references it, its charges or its payments
        """
        with atomic(self.db):
            settlement = self.get_settlement(settlement_id)

            completed = self.db.scalar(
                select(func.count(Payment.id)).where(
                    Payment.settlement_id == settlement_id,
                    Payment.status == PaymentStatus.COMPLETED,
                )
            )
            if completed:
                logger.warning("Rejected deletion of settlement %s: %s completed payments", settlement_id, completed)
                raise ConsistencyError(
                    f"Settlement {settlement.label} has {completed} completed payments and cannot be deleted"
                )

            charge_ids = select(Charge.id).where(Charge.settlement_id == settlement_id)
            payment_ids = select(Payment.id).where(Payment.settlement_id == settlement_id)
            movements = self.db.scalar(
                select(func.count(CreditMovement.id)).where(
                    (CreditMovement.settlement_id == settlement_id)
                    | (CreditMovement.charge_id.in_(charge_ids))
                    | (CreditMovement.payment_id.in_(payment_ids))
                )
            )
            if movements:
                logger.warning("Rejected deletion of settlement %s: %s credit movements", settlement_id, movements)
                raise ConsistencyError(
                    f"Settlement {settlement.label} is referenced by credit movements and cannot be deleted"
                )

            for payment in self.db.query(Payment).filter(Payment.settlement_id == settlement_id).all():
                self.db.delete(payment)

            AuditService.log(
                self.db,
                entity_type="settlement",
                entity_id=settlement_id,
                action="delete",
                actor_id=actor_id,
                changes={"building_id": settlement.building_id, "period": settlement.label},
            )
            label = settlement.label
            self.db.delete(settlement)

        logger.info("Deleted settlement: settlement_id=%s, period=%s", settlement_id, label)


__all__ = ["SettlementService", "SettlementCharges"]
