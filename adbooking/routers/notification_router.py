from typing import Annotated, List

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from .. import notifications, schemas
from ..auth import get_current_user
from ..database import get_db
from ..errors import workflow_error_to_http

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get("/", response_model=List[schemas.NotificationRead])
def read_notifications(
        user: Annotated[schemas.CurrentUser, Depends(get_current_user)],
        db: Session = Depends(get_db),
        unread: bool = False,
        limit: int = Query(50, ge=1, le=200),
):
    """
    The caller's notifications, newest first. unread=true returns only unread ones.
    """
    if unread:
        return notifications.list_unread(db, user.id)
    return notifications.list_notifications(db, user.id, limit=limit)


@router.get("/unread-count", response_model=schemas.UnreadCount)
def read_unread_count(
        user: Annotated[schemas.CurrentUser, Depends(get_current_user)],
        db: Session = Depends(get_db),
):
    return {"count": notifications.unread_count(db, user.id)}


@router.put("/read-all")
def mark_all_notifications_read(
        user: Annotated[schemas.CurrentUser, Depends(get_current_user)],
        db: Session = Depends(get_db),
):
    return {"count": notifications.mark_all_read(db, user.id)}


@router.put("/{notification_id}/read", response_model=schemas.NotificationRead)
def mark_notification_read(
        notification_id: int,
        user: Annotated[schemas.CurrentUser, Depends(get_current_user)],
        db: Session = Depends(get_db),
):
    try:
        return notifications.mark_read(db, notification_id, user.id)
    except Exception as e:
        raise workflow_error_to_http(e)


@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_notification(
        notification_id: int,
        user: Annotated[schemas.CurrentUser, Depends(get_current_user)],
        db: Session = Depends(get_db),
):
    try:
        notifications.delete_notification(db, notification_id, user.id)
    except Exception as e:
        raise workflow_error_to_http(e)
