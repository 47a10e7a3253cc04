"""Credit movement ORM model - append-only log of a unit's credit ledger."""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Index, Numeric, String
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from building_ledger.models import Base, BaseModel


class MovementType(str, Enum):
    """Direction of a credit movement."""

    CREDIT = "CREDIT"
    """Credit generated (overpayment, reinstatement, manual credit)."""

    DEBIT = "DEBIT"
    """Credit consumed (applied to a charge, reversal, manual debit)."""


class CreditMovement(Base, BaseModel):
    """Model representing one change of a unit's credit balance.

    Rows are never deleted or edited except for ``reversed_at``, which marks
    a movement whose effect was undone by a later compensating movement.
    The unit's ``credit_balance`` always equals sum(CREDIT) - sum(DEBIT).
    """

    __tablename__ = "credit_movements"

    unit_id: Mapped[int] = mapped_column(
        ForeignKey("units.id"),
        nullable=False,
        index=True,
    )
    payment_id: Mapped[int | None] = mapped_column(
        ForeignKey("payments.id"),
        nullable=True,
        index=True,
        comment="Payment whose allocation produced this movement",
    )
    settlement_id: Mapped[int | None] = mapped_column(
        ForeignKey("settlements.id"),
        nullable=True,
    )
    charge_id: Mapped[int | None] = mapped_column(
        ForeignKey("charges.id"),
        nullable=True,
        comment="Charge funded by a DEBIT movement",
    )

    amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="Always positive; sign comes from movement_type",
    )
    late_fee_portion: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
        comment="Part of a DEBIT that paid late fee rather than principal",
    )
    movement_type: Mapped[MovementType] = mapped_column(
        SQLEnum(MovementType),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(String(300), nullable=False)
    reversed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Relationships
    payment: Mapped["Payment | None"] = relationship("Payment")  # noqa: F821
    settlement: Mapped["Settlement | None"] = relationship("Settlement")  # noqa: F821
    charge: Mapped["Charge | None"] = relationship("Charge")  # noqa: F821

    __table_args__ = (
        Index("idx_movement_unit_created", "unit_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<CreditMovement(id={self.id}, unit_id={self.unit_id}, "
            f"type={self.movement_type}, amount={self.amount}, payment_id={self.payment_id})>"
        )


__all__ = ["CreditMovement", "MovementType"]
