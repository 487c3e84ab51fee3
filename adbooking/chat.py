import calendar
import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import crud, models, notifications
from .errors import NotFoundError
from .rooms import AGENT_COMMERCIAL, CUSTOMER_AGENT, parse_room

logger = logging.getLogger("adbooking")

HISTORY_LIMIT = 500
PREVIEW_LENGTH = 50


def get_room_messages(db: Session, room_id: str, limit: int = HISTORY_LIMIT) -> list[models.ChatMessage]:
    """Room history, oldest first."""
    stmt = select(models.ChatMessage).where(
        models.ChatMessage.room_id == room_id
    ).order_by(models.ChatMessage.created_at.asc(), models.ChatMessage.id.asc()).limit(limit)
    return list(db.execute(stmt).scalars().all())


def room_has_messages(db: Session, room_id: str) -> bool:
    stmt = select(models.ChatMessage.id).where(models.ChatMessage.room_id == room_id).limit(1)
    return db.execute(stmt).first() is not None


def create_chat_message(
        db: Session,
        room_id: str,
        sender_id: Optional[int],
        sender_name: Optional[str],
        content: str,
        chat_type: str = CUSTOMER_AGENT,
        application_id: Optional[str] = None,
        file_url: Optional[str] = None,
        file_name: Optional[str] = None,
        file_size: Optional[int] = None,
) -> models.ChatMessage:
    message = models.ChatMessage(
        room_id=room_id,
        sender_id=sender_id,
        sender_name=sender_name,
        content=content,
        chat_type=chat_type or CUSTOMER_AGENT,
        application_id=application_id,
        file_url=file_url,
        file_name=file_name,
        file_size=file_size,
    )
    db.add(message)
    db.commit()
    db.refresh(message)
    return message


def serialize_message(message: models.ChatMessage) -> dict[str, Any]:
    """
    Wire shape of a chat message. Both snake_case and camelCase keys are sent
    because older clients read either.
    """
    timestamp = calendar.timegm(message.created_at.utctimetuple()) * 1000 + message.created_at.microsecond // 1000
    return {
        "id": message.id,
        "room_id": message.room_id,
        "roomId": message.room_id,
        "sender_id": message.sender_id,
        "senderId": message.sender_id,
        "sender_name": message.sender_name,
        "senderName": message.sender_name,
        "content": message.content,
        "timestamp": timestamp,
        "chat_type": message.chat_type,
        "chatType": message.chat_type,
        "application_id": message.application_id,
        "applicationId": message.application_id,
        "file_url": message.file_url,
        "fileUrl": message.file_url,
        "file_name": message.file_name,
        "fileName": message.file_name,
        "file_size": message.file_size,
        "fileSize": message.file_size,
        "type": "file" if message.file_url else "text",
    }


def resolve_recipient(db: Session, room_id: str, sender_id: Optional[int]) -> Optional[int]:
    """
    The other participant of a chat room, given who sent the message.
    """
    room = parse_room(room_id)
    if room is None or room.application_id is None:
        return None

    try:
        application = crud.find_application(db, room.application_id)
    except NotFoundError:
        application = None

    if room.chat_type == CUSTOMER_AGENT:
        if application is None:
            return None
        if sender_id == application.customer_id:
            return application.agent_id
        return application.customer_id

    if room.chat_type == AGENT_COMMERCIAL:
        if sender_id != room.agent_id:
            return room.agent_id
        return application.commercial_id if application is not None else None

    return None


async def notify_recipient(db: Session, message: models.ChatMessage) -> Optional[models.Notification]:
    recipient_id = resolve_recipient(db, message.room_id, message.sender_id)
    if recipient_id is None or recipient_id == message.sender_id:
        return None

    sender = message.sender_name or "User"
    preview = message.content[:PREVIEW_LENGTH]
    if len(message.content) > PREVIEW_LENGTH:
        preview += "..."
    return await notifications.notify_user(
        db,
        recipient_id,
        notifications.NEW_MESSAGE,
        "New message",
        f"{sender}: {preview}",
        data={
            "roomId": message.room_id,
            "messageId": message.id,
            "senderId": message.sender_id,
            "senderName": message.sender_name,
        },
    )
