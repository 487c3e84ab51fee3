import datetime
import logging
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from . import kafka_producer, models, schemas
from .errors import NotFoundError, PermissionDeniedError

logger = logging.getLogger("adbooking")

# Notification type tags, used by clients for rendering only
APPLICATION = "application"
STATUS_CHANGED = "status_changed"
APPLICATION_UPDATED = "application_updated"
COMMERCIAL_ASSIGNED = "commercial_assigned"
APPLICATION_CANCELLED = "application_cancelled"
NEW_MESSAGE = "new_message"
COMMISSION_PAID = "commission_paid"


def create_notification(
        db: Session,
        user_id: int,
        type: str,
        title: str,
        message: str,
        data: Optional[dict[str, Any]] = None,
) -> models.Notification:
    notification = models.Notification(
        user_id=user_id, type=type, title=title, message=message, data=data, read=False,
    )
    db.add(notification)
    db.commit()
    db.refresh(notification)
    return notification


async def notify_user(
        db: Session,
        user_id: int,
        type: str,
        title: str,
        message: str,
        data: Optional[dict[str, Any]] = None,
) -> models.Notification:
    """
    Persists the notification, then pushes it to the user's realtime room.
    The stored row is the source of truth; a missed push is recovered by polling.
    """
    notification = create_notification(db, user_id, type, title, message, data)
    payload = schemas.NotificationRead.model_validate(notification).model_dump(mode="json")
    await kafka_producer.send_notification_to_user(user_id, payload)
    return notification


def list_notifications(db: Session, user_id: int, limit: int = 50) -> list[models.Notification]:
    stmt = select(models.Notification).where(
        models.Notification.user_id == user_id
    ).order_by(models.Notification.created_at.desc(), models.Notification.id.desc()).limit(limit)
    return list(db.execute(stmt).scalars().all())


def list_unread(db: Session, user_id: int) -> list[models.Notification]:
    stmt = select(models.Notification).where(
        models.Notification.user_id == user_id,
        models.Notification.read.is_(False),
    ).order_by(models.Notification.created_at.desc(), models.Notification.id.desc())
    return list(db.execute(stmt).scalars().all())


def unread_count(db: Session, user_id: int) -> int:
    stmt = select(func.count(models.Notification.id)).where(
        models.Notification.user_id == user_id,
        models.Notification.read.is_(False),
    )
    return db.execute(stmt).scalar_one()


def _owned_notification(db: Session, notification_id: int, user_id: int) -> models.Notification:
    notification = db.get(models.Notification, notification_id)
    if notification is None:
        raise NotFoundError(f"Notification {notification_id} not found")
    if notification.user_id != user_id:
        raise PermissionDeniedError("Notification belongs to another user")
    return notification


def mark_read(db: Session, notification_id: int, user_id: int) -> models.Notification:
    notification = _owned_notification(db, notification_id, user_id)
    if not notification.read:
        notification.read = True
        notification.read_at = datetime.datetime.utcnow()
        db.commit()
        db.refresh(notification)
    return notification


def mark_all_read(db: Session, user_id: int) -> int:
    result = db.execute(
        update(models.Notification)
        .where(models.Notification.user_id == user_id, models.Notification.read.is_(False))
        .values(read=True, read_at=datetime.datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount or 0


def delete_notification(db: Session, notification_id: int, user_id: int) -> None:
    notification = _owned_notification(db, notification_id, user_id)
    db.delete(notification)
    db.commit()
