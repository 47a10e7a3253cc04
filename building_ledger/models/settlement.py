"""Settlement ORM model - one monthly billing period of a building."""

from datetime import date
from decimal import Decimal

from sqlalchemy import Date, ForeignKey, Index, Numeric
from sqlalchemy.orm import Mapped, mapped_column, relationship

from building_ledger.models import Base, BaseModel


class Settlement(Base, BaseModel):
    """Model representing a building's expense settlement for a month.

    Generates one Charge per unit. The first due date bounds the early-payment
    discount; once the second due date has passed, unpaid charges accrue a
    linear monthly late fee at ``late_fee_rate`` percent.
    """

    __tablename__ = "settlements"

    building_id: Mapped[int] = mapped_column(
        ForeignKey("buildings.id"),
        nullable=False,
        index=True,
        comment="Building being billed",
    )
    month: Mapped[int] = mapped_column(nullable=False, comment="Billing month (1-12)")
    year: Mapped[int] = mapped_column(nullable=False, comment="Billing year")
    total_expense: Mapped[Decimal] = mapped_column(
        Numeric(14, 2),
        nullable=False,
        comment="Total building expense shared across units",
    )
    due_date1: Mapped[date | None] = mapped_column(
        Date,
        nullable=True,
        comment="First due date (early-payment discount deadline)",
    )
    due_date2: Mapped[date | None] = mapped_column(
        Date,
        nullable=True,
        comment="Second due date (late fees accrue after it)",
    )
    late_fee_rate: Mapped[Decimal] = mapped_column(
        Numeric(5, 2),
        nullable=False,
        default=Decimal("10"),
        comment="Late fee, percent of pending principal per month",
    )

    # Relationships
    building: Mapped["Building"] = relationship(  # noqa: F821
        "Building",
        back_populates="settlements",
    )
    charges: Mapped[list["Charge"]] = relationship(  # noqa: F821
        "Charge",
        back_populates="settlement",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_settlement_period", "building_id", "year", "month", unique=True),
    )

    @property
    def label(self) -> str:
        """Short period label, e.g. ``3/2025``."""
        return f"{self.month}/{self.year}"

    def __repr__(self) -> str:
        return (
            f"<Settlement(id={self.id}, building_id={self.building_id}, "
            f"period={self.month}/{self.year}, total_expense={self.total_expense})>"
        )


__all__ = ["Settlement"]
