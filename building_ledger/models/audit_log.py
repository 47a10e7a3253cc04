"""Audit trail rows for ledger events."""

from typing import Any

from sqlalchemy import JSON, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from building_ledger.models import Base, BaseModel


class AuditLog(Base, BaseModel):
    """One ledger event: settlement issued or deleted, payment recorded or
    cancelled, credit adjusted by hand.

    Entries are never updated. Deleting a settlement keeps its entries, so
    entity_id may point at a row that no longer exists.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (Index("ix_audit_logs_entity", "entity_type", "entity_id"),)

    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[int] = mapped_column(nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)

    actor_id: Mapped[int | None] = mapped_column(nullable=True)
    """Operator id; None when the ledger acted on its own."""

    changes: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    """Snapshot such as {"amount": "120.00", "receipt_ref": "R-1"}."""

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, {self.entity_type}#{self.entity_id} {self.action}, actor={self.actor_id})>"


__all__ = ["AuditLog"]
