"""Payment ORM model - cash received for a unit's settlement charge."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import Date, DateTime, ForeignKey, Index, Numeric, String, Text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from building_ledger.models import Base, BaseModel


class PaymentStatus(str, Enum):
    """Lifecycle of a payment."""

    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class Payment(Base, BaseModel):
    """Model representing a received payment.

    ``amount`` is the cash received. ``principal_applied`` and
    ``late_fee_applied`` record what of it went into this charge, so a
    cancellation can subtract exactly that contribution. Any remainder went
    to the unit's credit ledger (see CreditMovement.payment_id).
    """

    __tablename__ = "payments"

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

    amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="Cash amount received",
    )
    receipt_ref: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Receipt identifier",
    )
    payment_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    discount_applied: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
        comment="Early-payment discount granted by this payment",
    )
    principal_applied: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
    )
    late_fee_applied: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
    )

    status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(PaymentStatus),
        nullable=False,
        default=PaymentStatus.COMPLETED,
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Relationships
    settlement: Mapped["Settlement"] = relationship("Settlement")  # noqa: F821
    unit: Mapped["Unit"] = relationship("Unit")  # noqa: F821

    __table_args__ = (
        Index("idx_payment_settlement_unit", "settlement_id", "unit_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, unit_id={self.unit_id}, settlement_id={self.settlement_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


__all__ = ["Payment", "PaymentStatus"]
