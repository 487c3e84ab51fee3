import logging
from typing import Annotated, Any, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import chat, schemas
from ..auth import get_chat_caller
from ..database import get_db

logger = logging.getLogger("adbooking")

router = APIRouter(prefix="/chat", tags=["Chat"])


@router.get("/rooms/{room_id}/messages", response_model=List[dict[str, Any]])
def read_room_messages(
        room_id: str,
        caller: Annotated[Optional[schemas.CurrentUser], Depends(get_chat_caller)],
        db: Session = Depends(get_db),
):
    """
    Persisted room history, oldest first. The relay replays this to joining connections.
    """
    return [chat.serialize_message(m) for m in chat.get_room_messages(db, room_id)]


@router.post("/rooms/{room_id}/messages", status_code=status.HTTP_201_CREATED)
async def create_room_message(
        room_id: str,
        payload: schemas.ChatMessageCreate,
        caller: Annotated[Optional[schemas.CurrentUser], Depends(get_chat_caller)],
        db: Session = Depends(get_db),
) -> dict[str, Any]:
    """
    Persist a message. Broadcasting it is the relay's job, this endpoint only
    stores it and notifies the other participant.
    """
    sender_id = payload.sender_id
    if caller is not None:
        # Users can only speak for themselves
        sender_id = caller.id

    try:
        message = chat.create_chat_message(
            db,
            room_id,
            sender_id,
            payload.sender_name or (caller.name if caller is not None else None),
            payload.content,
            chat_type=payload.chat_type,
            application_id=payload.application_id,
            file_url=payload.file_url,
            file_name=payload.file_name,
            file_size=payload.file_size,
        )
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to persist chat message for room {room_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to persist chat message",
        )

    normalized = chat.serialize_message(message)

    try:
        await chat.notify_recipient(db, message)
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to create chat notification for room {room_id}: {e}")

    return normalized
