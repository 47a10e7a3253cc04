"""SQLAlchemy base model with common fields and model exports."""

from datetime import datetime, timezone

from sqlalchemy import DateTime
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

# Base class for all models
Base = declarative_base()


class BaseModel:
    """Base model with common timestamp fields."""

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )


# Import models to register them with Base (after Base is defined)
# This must be after Base declaration to avoid circular imports
from building_ledger.models.audit_log import AuditLog  # noqa: E402
from building_ledger.models.building import Building  # noqa: E402
from building_ledger.models.charge import Charge, ChargeStatus  # noqa: E402
from building_ledger.models.credit_movement import CreditMovement, MovementType  # noqa: E402
from building_ledger.models.payment import Payment, PaymentStatus  # noqa: E402
from building_ledger.models.settlement import Settlement  # noqa: E402
from building_ledger.models.unit import Unit  # noqa: E402

__all__ = [
    "Base",
    "BaseModel",
    "AuditLog",
    "Building",
    "Unit",
    "Settlement",
    "Charge",
    "ChargeStatus",
    "Payment",
    "PaymentStatus",
    "CreditMovement",
    "MovementType",
]
