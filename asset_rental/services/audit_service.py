from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from asset_rental.models.asset_models import AuditLog, NotificationQueue


def log_audit(db: Session, entity_type: str, entity_id: int, action: str, details: str | None = None, user_id: int | None = None) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=details,
            UserID=user_id,
            CreatedAt=datetime.now(),
        )
    )


def queue_notification(db: Session, rental_id: int, notification_type: str, payload: str) -> None:
    db.add(
        NotificationQueue(
            RentalID=rental_id,
            NotificationType=notification_type,
            Payload=payload,
            CreatedAt=datetime.now(),
        )
    )


def list_audit_entries(db: Session, entity_type: str, entity_id: int) -> list[AuditLog]:
    return db.execute(
        select(AuditLog)
        .where(AuditLog.EntityType == entity_type)
        .where(AuditLog.EntityID == entity_id)
        .order_by(AuditLog.AuditID)
    ).scalars().all()
