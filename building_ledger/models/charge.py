"""Charge ORM model - what one unit owes for one settlement."""

from datetime import date
from decimal import Decimal
from enum import Enum

from sqlalchemy import Date, ForeignKey, Index, Numeric
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from building_ledger.models import Base, BaseModel
from building_ledger.services.errors import LedgerInvariantError


class ChargeStatus(str, Enum):
    """Payment status of a charge."""

    PENDING = "PENDING"
    PARTIAL = "PARTIAL"
    PAID = "PAID"


class Charge(Base, BaseModel):
    """Per-unit, per-settlement ledger row.

    Principal payments retire ``previous_balance`` first and then
    ``current_fee``. The late-fee snapshot is a one-way state machine:
    UNFROZEN (``late_fee_frozen_at`` is null) -> FROZEN(months, amount),
    set exactly once by :meth:`freeze_late_fee`.
    """

    __tablename__ = "charges"

    settlement_id: Mapped[int] = mapped_column(
        ForeignKey("settlements.id"),
        nullable=False,
        index=True,
    )
    unit_id: Mapped[int] = mapped_column(
        ForeignKey("units.id"),
        nullable=False,
        index=True,
    )

    previous_balance: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
        comment="Balance carried into this settlement",
    )
    current_fee: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="Total expense x unit share",
    )
    principal_paid: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
        comment="Cumulative principal paid (cash and applied credit)",
    )
    total_to_pay: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="max(0, previous + fee - discount - principal paid)",
    )
    status: Mapped[ChargeStatus] = mapped_column(
        SQLEnum(ChargeStatus),
        nullable=False,
        default=ChargeStatus.PENDING,
    )

    # Late-fee snapshot
    late_fee_frozen_at: Mapped[date | None] = mapped_column(
        Date,
        nullable=True,
        comment="Reference date at which the late fee was frozen",
    )
    late_fee_months_late: Mapped[int] = mapped_column(nullable=False, default=0)
    late_fee_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
    )
    late_fee_paid: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
    )

    version: Mapped[int] = mapped_column(nullable=False)

    # Relationships
    settlement: Mapped["Settlement"] = relationship(  # noqa: F821
        "Settlement",
        back_populates="charges",
    )
    unit: Mapped["Unit"] = relationship(  # noqa: F821
        "Unit",
        back_populates="charges",
    )

    __table_args__ = (
        Index("idx_charge_settlement_unit", "settlement_id", "unit_id", unique=True),
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_frozen(self) -> bool:
        return self.late_fee_frozen_at is not None

    def freeze_late_fee(self, months_late: int, amount: Decimal, frozen_at: date) -> None:
        """Store the late-fee snapshot. A charge can be frozen only once."""
        if self.is_frozen:
            raise LedgerInvariantError(f"Charge {self.id} late fee is already frozen")
        self.late_fee_frozen_at = frozen_at
        self.late_fee_months_late = months_late
        self.late_fee_amount = amount

    def __repr__(self) -> str:
        return (
            f"<Charge(id={self.id}, settlement_id={self.settlement_id}, unit_id={self.unit_id}, "
            f"total_to_pay={self.total_to_pay}, status={self.status})>"
        )


__all__ = ["Charge", "ChargeStatus"]
