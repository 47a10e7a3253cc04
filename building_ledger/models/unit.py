"""Unit ORM model - one apartment/office sharing the building expense."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from building_ledger.models import Base, BaseModel


class Unit(Base, BaseModel):
    """Model representing a billable unit of a building.

    The unit is the aggregate root of its credit ledger: ``credit_balance`` is
    written only by the credit ledger service, always together with a
    CreditMovement row. ``version`` is an optimistic-locking counter so two
    concurrent mutations against the same unit cannot both commit.
    """

    __tablename__ = "units"

    building_id: Mapped[int] = mapped_column(
        ForeignKey("buildings.id"),
        nullable=False,
        index=True,
        comment="Building this unit belongs to",
    )
    code: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Unit code within the building (e.g., '3B')",
    )
    percentage: Mapped[Decimal] = mapped_column(
        Numeric(7, 4),
        nullable=False,
        comment="Share of the monthly building expense, in percent",
    )
    credit_balance: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
        comment="Unapplied overpayment credit; equals the signed sum of movements",
    )
    ledger_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Last time a ledger mutation touched this unit",
    )
    version: Mapped[int] = mapped_column(nullable=False)

    # Relationships
    building: Mapped["Building"] = relationship(  # noqa: F821
        "Building",
        back_populates="units",
    )
    charges: Mapped[list["Charge"]] = relationship(  # noqa: F821
        "Charge",
        back_populates="unit",
    )

    __table_args__ = (
        Index("idx_unit_building_code", "building_id", "code", unique=True),
        CheckConstraint("credit_balance >= 0", name="ck_unit_credit_non_negative"),
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<Unit(id={self.id}, building_id={self.building_id}, code={self.code!r}, "
            f"percentage={self.percentage}, credit_balance={self.credit_balance})>"
        )


__all__ = ["Unit"]
