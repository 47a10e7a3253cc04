"""Building ORM model - the owner of units and settlements."""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from building_ledger.models import Base, BaseModel


class Building(Base, BaseModel):
    """Model representing a multi-unit building whose expenses are shared."""

    __tablename__ = "buildings"

    name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        unique=True,
        comment="Building display name",
    )
    address: Mapped[str | None] = mapped_column(
        String(300),
        nullable=True,
        comment="Street address",
    )

    # Relationships
    units: Mapped[list["Unit"]] = relationship(  # noqa: F821
        "Unit",
        back_populates="building",
        cascade="all, delete-orphan",
        order_by="Unit.code",
    )
    settlements: Mapped[list["Settlement"]] = relationship(  # noqa: F821
        "Settlement",
        back_populates="building",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Building(id={self.id}, name={self.name!r})>"


__all__ = ["Building"]
