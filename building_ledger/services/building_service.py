"""Building service: buildings, units and per-building ledger views."""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from building_ledger.models.building import Building
from building_ledger.models.charge import Charge, ChargeStatus
from building_ledger.models.payment import Payment
from building_ledger.models.settlement import Settlement
from building_ledger.models.unit import Unit
from building_ledger.services import atomic
from building_ledger.services.arrears_service import ArrearsPeriod, ArrearsService
from building_ledger.services.errors import (
    ConsistencyError,
    DataValidationError,
    NotFoundError,
)
from building_ledger.services.locale_service import format_share
from building_ledger.services.money import round2, to_decimal

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


@dataclass
class UnitDebt:
    """A unit with arrears, as shown on the building's debtor list."""

    unit_id: int
    unit_code: str
    total_arrears: Decimal
    credit_balance: Decimal
    periods: list[ArrearsPeriod] = field(default_factory=list)


@dataclass
class AccountHistoryEntry:
    """One settlement in a unit's account history."""

    charge_id: int
    settlement_id: int
    month: int
    year: int
    previous_balance: Decimal
    current_fee: Decimal
    principal_paid: Decimal
    total_to_pay: Decimal
    status: ChargeStatus
    late_fee_amount: Decimal
    late_fee_paid: Decimal
    payments: list[Payment] = field(default_factory=list)


def _validate_percentage(percentage) -> Decimal:
    try:
        percentage = to_decimal(percentage)
    except (ArithmeticError, ValueError, TypeError):
        raise DataValidationError(f"Invalid percentage: {percentage!r}") from None
    if not percentage.is_finite() or percentage <= 0 or percentage > HUNDRED:
        raise DataValidationError("Percentage must be greater than 0 and at most 100")
    return percentage


class BuildingService:
    """Service for buildings and their units."""

    def __init__(self, db: Session):
        self.db = db

    def get_building(self, building_id: int) -> Building:
        building = self.db.get(Building, building_id)
        if building is None:
            raise NotFoundError(f"Building {building_id} not found")
        return building

    def get_unit(self, unit_id: int) -> Unit:
        unit = self.db.get(Unit, unit_id)
        if unit is None:
            raise NotFoundError(f"Unit {unit_id} not found")
        return unit

    def list_buildings(self) -> list[Building]:
        return list(self.db.execute(select(Building).order_by(Building.name)).scalars().all())

    def _percentage_in_use(self, building_id: int, exclude_unit_id: int | None = None) -> Decimal:
        query = self.db.query(Unit.percentage).filter(Unit.building_id == building_id)
        if exclude_unit_id is not None:
            query = query.filter(Unit.id != exclude_unit_id)
        return sum((to_decimal(p) for (p,) in query.all()), Decimal("0"))

    def create_building(self, name: str, address: str | None = None) -> Building:
        """Create a building.

        Raises:
            DataValidationError: Empty name
            ConsistencyError: A building with that name exists
        """
        name = (name or "").strip()
        if not name:
            raise DataValidationError("Building name is required")

        with atomic(self.db):
            if self.db.query(Building).filter(Building.name == name).first() is not None:
                raise ConsistencyError(f"Building {name!r} already exists")
            building = Building(name=name, address=(address or "").strip() or None)
            self.db.add(building)
            self.db.flush()

        logger.info("Created building: building_id=%s, name=%s", building.id, name)
        return building

    def create_unit(self, building_id: int, code: str, percentage) -> Unit:
        """Add a unit to a building.

        Args:
            building_id: Building the unit belongs to
            code: Unit code, unique within the building
            percentage: Share of the monthly expense, in (0, 100]

        Raises:
            DataValidationError: Bad code or percentage, or the building's
                shares would exceed 100%
            NotFoundError: Building missing
            ConsistencyError: Code already used in the building
        """
        code = (code or "").strip()
        if not code:
            raise DataValidationError("Unit code is required")
        percentage = _validate_percentage(percentage)

        with atomic(self.db):
            building = self.get_building(building_id)
            duplicate = (
                self.db.query(Unit)
                .filter(Unit.building_id == building_id, Unit.code == code)
                .first()
            )
            if duplicate is not None:
                raise ConsistencyError(f"Unit {code} already exists in {building.name}")

            in_use = self._percentage_in_use(building_id)
            if in_use + percentage > HUNDRED:
                logger.warning(
                    "Rejected unit %s: building %s shares would reach %s%%",
                    code,
                    building_id,
                    in_use + percentage,
                )
                raise DataValidationError(
                    f"Unit shares of {building.name} would add up to {format_share(in_use + percentage)}"
                )

            unit = Unit(building_id=building_id, code=code, percentage=percentage)
            self.db.add(unit)
            self.db.flush()

        logger.info("Created unit: unit_id=%s, building_id=%s, code=%s, percentage=%s", unit.id, building_id, code, percentage)
        return unit

    def update_unit_percentage(self, unit_id: int, percentage) -> Unit:
        """Change a unit's share; only settlements created afterwards use it."""
        percentage = _validate_percentage(percentage)

        with atomic(self.db):
            unit = self.get_unit(unit_id)
            in_use = self._percentage_in_use(unit.building_id, exclude_unit_id=unit_id)
            if in_use + percentage > HUNDRED:
                raise DataValidationError(
                    f"Unit shares of the building would add up to {format_share(in_use + percentage)}"
                )
            unit.percentage = percentage

        logger.info("Updated unit percentage: unit_id=%s, percentage=%s", unit_id, percentage)
        return unit

    def building_debtors(self, building_id: int, reference_date: date) -> list[UnitDebt]:
        """Units of a building with arrears at the reference date, by unit code.

        Reading arrears may freeze late fees, so the call commits.
        """
        arrears = ArrearsService(self.db)
        debtors = []
        with atomic(self.db):
            self.get_building(building_id)
            units = (
                self.db.query(Unit)
                .filter(Unit.building_id == building_id)
                .order_by(Unit.code)
                .all()
            )
            for unit in units:
                summary = arrears.build_summary(unit.id, reference_date)
                if summary.total_arrears <= 0:
                    continue
                debtors.append(
                    UnitDebt(
                        unit_id=unit.id,
                        unit_code=unit.code,
                        total_arrears=summary.total_arrears,
                        credit_balance=round2(unit.credit_balance),
                        periods=summary.periods,
                    )
                )
        return debtors

    def unit_account_history(self, unit_id: int) -> list[AccountHistoryEntry]:
        """Charges of a unit, newest period first, each with its payments."""
        self.get_unit(unit_id)
        charges = (
            self.db.query(Charge)
            .join(Charge.settlement)
            .filter(Charge.unit_id == unit_id)
            .order_by(Settlement.year.desc(), Settlement.month.desc(), Charge.id.desc())
            .all()
        )
        payments = (
            self.db.query(Payment)
            .filter(Payment.unit_id == unit_id)
            .order_by(Payment.payment_date, Payment.id)
            .all()
        )
        by_settlement: dict[int, list[Payment]] = {}
        for payment in payments:
            by_settlement.setdefault(payment.settlement_id, []).append(payment)

        return [
            AccountHistoryEntry(
                charge_id=charge.id,
                settlement_id=charge.settlement_id,
                month=charge.settlement.month,
                year=charge.settlement.year,
                previous_balance=round2(charge.previous_balance),
                current_fee=round2(charge.current_fee),
                principal_paid=round2(charge.principal_paid),
                total_to_pay=round2(charge.total_to_pay),
                status=charge.status,
                late_fee_amount=round2(charge.late_fee_amount),
                late_fee_paid=round2(charge.late_fee_paid),
                payments=by_settlement.get(charge.settlement_id, []),
            )
            for charge in charges
        ]


__all__ = ["BuildingService", "UnitDebt", "AccountHistoryEntry"]
