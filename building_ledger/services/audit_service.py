"""Audit trail for settlements, payments and credit adjustments."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import select
from sqlalchemy.orm import Session

from building_ledger.models.audit_log import AuditLog


def _jsonable(value):
    """Render ledger values so the JSON column keeps exact amounts."""
    if isinstance(value, Decimal):
        return str(value.quantize(Decimal("0.01"))) if value.is_finite() else str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class AuditService:
    """Audit entries are added to the caller's session.

    They commit or roll back together with the ledger mutation they describe,
    so a rejected payment never leaves a "create" entry behind.
    """

    @staticmethod
    def log(
        db: Session,
        entity_type: str,
        entity_id: int,
        action: str,
        actor_id: int | None = None,
        changes: dict | None = None,
    ) -> AuditLog:
        """Add an audit entry for a ledger event.

        Args:
            db: Database session
            entity_type: "settlement", "payment" or "credit_movement"
            entity_id: Primary key of the entity
            action: "create", "delete", "cancel" or "manual_adjustment"
            actor_id: Operator who performed the action (optional)
            changes: Field snapshot; Decimal amounts are stored as 2dp strings

        Returns:
            The pending AuditLog row
        """
        entry = AuditLog(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            changes=_jsonable(changes) if changes is not None else None,
        )
        db.add(entry)
        return entry

    @staticmethod
    def history(db: Session, entity_type: str, entity_id: int) -> list[AuditLog]:
        """Entries for one entity, oldest first."""
        stmt = (
            select(AuditLog)
            .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
            .order_by(AuditLog.created_at, AuditLog.id)
        )
        return list(db.execute(stmt).scalars().all())


__all__ = ["AuditService"]
