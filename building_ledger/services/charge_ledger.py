"""Charge ledger: loads charges and recomputes their derived state."""

import logging
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from building_ledger.models.charge import Charge
from building_ledger.models.payment import Payment, PaymentStatus
from building_ledger.services.billing import (
    ChargePortions,
    charge_portions,
    charge_status,
    raw_total_to_pay,
)
from building_ledger.services.errors import LedgerInvariantError, NotFoundError
from building_ledger.services.money import ZERO, non_negative, round2

logger = logging.getLogger(__name__)


class ChargeLedger:
    """Read and recompute per-unit, per-settlement charges.

    The early-payment discount used on a charge is derived from its
    COMPLETED payments, which are the source of truth for it.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_charge(self, unit_id: int, settlement_id: int) -> Charge:
        charge = (
            self.db.query(Charge)
            .filter(Charge.unit_id == unit_id, Charge.settlement_id == settlement_id)
            .first()
        )
        if charge is None:
            raise NotFoundError(
                f"No charge exists for unit {unit_id} in settlement {settlement_id}"
            )
        return charge

    def discount_used(self, charge: Charge) -> Decimal:
        """Sum of discounts granted by COMPLETED payments on this charge."""
        return self.discount_map(charge.unit_id, [charge.settlement_id]).get(
            charge.settlement_id, ZERO
        )

    def discount_map(self, unit_id: int, settlement_ids: list[int]) -> dict[int, Decimal]:
        """Discount used per settlement for one unit.

        Args:
            unit_id: Unit whose payments are summed
            settlement_ids: Settlements to include

        Returns:
            Dict mapping settlement_id to discount used (missing = 0)
        """
        if not settlement_ids:
            return {}
        stmt = (
            select(Payment.settlement_id, func.sum(Payment.discount_applied))
            .where(
                Payment.unit_id == unit_id,
                Payment.settlement_id.in_(settlement_ids),
                Payment.status == PaymentStatus.COMPLETED,
            )
            .group_by(Payment.settlement_id)
        )
        return {
            settlement_id: round2(total or 0)
            for settlement_id, total in self.db.execute(stmt).all()
        }

    @staticmethod
    def portions(charge: Charge, discount_used: Decimal) -> ChargePortions:
        return charge_portions(
            charge.previous_balance,
            charge.current_fee,
            charge.principal_paid,
            discount_used,
        )

    @staticmethod
    def pending_principal(charge: Charge, discount_used: Decimal) -> Decimal:
        return non_negative(
            raw_total_to_pay(
                charge.previous_balance,
                charge.current_fee,
                discount_used,
                charge.principal_paid,
            )
        )

    @staticmethod
    def pending_late_fee(charge: Charge) -> Decimal:
        return non_negative(round2(charge.late_fee_amount) - round2(charge.late_fee_paid))

    def recompute(self, charge: Charge, discount_used: Decimal | None = None) -> Charge:
        """Recompute total_to_pay and status from the charge's stored totals.

        Raises:
            LedgerInvariantError: If paid totals went negative or more
                principal was paid than the charge ever owed
        """
        if discount_used is None:
            discount_used = self.discount_used(charge)

        charge.principal_paid = round2(charge.principal_paid)
        charge.late_fee_paid = round2(charge.late_fee_paid)
        if charge.principal_paid < 0 or charge.late_fee_paid < 0:
            logger.error("Negative paid totals on charge %s", charge.id)
            raise LedgerInvariantError(f"Charge {charge.id} has negative paid totals")

        raw_total = raw_total_to_pay(
            charge.previous_balance,
            charge.current_fee,
            discount_used,
            charge.principal_paid,
        )
        if raw_total < 0:
            logger.error("Charge %s overpaid: computed total_to_pay=%s", charge.id, raw_total)
            raise LedgerInvariantError(
                f"Charge {charge.id} would have a negative total to pay ({raw_total})"
            )

        charge.total_to_pay = raw_total
        charge.status = charge_status(
            raw_total,
            self.pending_late_fee(charge),
            charge.principal_paid,
            charge.late_fee_paid,
        )
        return charge


__all__ = ["ChargeLedger"]
