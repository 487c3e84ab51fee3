import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from .connection_manager import ConnectionManager
from .kafka_consumer import consume_realtime_events
from .store_client import StoreClient

logger = logging.getLogger("adrelay")

# Fields the store accepts when persisting a message
MESSAGE_FIELDS = (
    "senderId", "senderName", "content", "fileUrl", "fileName", "fileSize", "chatType", "applicationId",
)

manager = ConnectionManager()
store_client = StoreClient()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Relay starting up...")
    await store_client.start()

    consumer_task = asyncio.create_task(consume_realtime_events(manager))

    yield

    logger.info("Relay shutting down...")
    consumer_task.cancel()
    try:
        await consumer_task
    except asyncio.CancelledError:
        logger.info("Kafka consumer successfully cancelled.")
    except Exception as e:
        logger.error(f"Kafka consumer stopped with an error: {e}")

    await store_client.close()


app = FastAPI(
    title="Ad Booking Realtime Relay",
    description="Room-based WebSocket fan-out for chat, notifications and workflow updates.",
    version="1.0.0",
    lifespan=lifespan,
)


def _room_id(data: Any) -> Optional[str]:
    if isinstance(data, dict):
        data = data.get("roomId") or data.get("room_id")
    return str(data) if data else None


def _user_id(data: Any) -> Optional[str]:
    if isinstance(data, dict):
        data = data.get("userId") or data.get("user_id")
    return str(data) if data not in (None, "") else None


async def join_room(websocket: WebSocket, data: Any):
    room_id = _room_id(data)
    if room_id is None:
        logger.warning("joinRoom without a room id, ignoring.")
        return
    if not manager.join(websocket, room_id):
        # Already subscribed: no second history push
        return
    logger.info(f"Connection joined room {room_id}.")

    try:
        history = await store_client.fetch_history(room_id)
    except Exception as e:
        logger.error(f"Failed to load history for room {room_id}: {e}")
        # Let the client retry the join
        manager.leave(websocket, room_id)
        return

    # History goes to the joining connection only
    for message in history:
        await manager.send_personal(websocket, "message", message)


async def leave_room(websocket: WebSocket, data: Any):
    room_id = _room_id(data)
    if room_id is not None and manager.leave(websocket, room_id):
        logger.info(f"Connection left room {room_id}.")


async def send_message(websocket: WebSocket, data: Any):
    """
    Persists first and broadcasts the stored message. A message the store
    rejects is dropped.
    """
    room_id = _room_id(data)
    if room_id is None or not isinstance(data, dict) or not data.get("content"):
        logger.warning(f"Dropping malformed sendMessage payload: {data}")
        return

    body = {field: data[field] for field in MESSAGE_FIELDS if data.get(field) is not None}
    try:
        persisted = await store_client.persist_message(room_id, body)
    except Exception as e:
        logger.error(f"Failed to persist message for room {room_id}, dropping it: {e}")
        return

    await manager.broadcast_room(room_id, "message", {**persisted, "tempId": data.get("tempId")})


async def relay_typing(websocket: WebSocket, data: Any, is_typing: bool):
    room_id = _room_id(data)
    if room_id is None:
        return
    payload = {
        "roomId": room_id,
        "userId": data.get("userId") if isinstance(data, dict) else None,
        "userName": data.get("userName") if isinstance(data, dict) else None,
    }
    if is_typing:
        payload["isTyping"] = True
    await manager.broadcast_room(
        room_id, "typing" if is_typing else "stopTyping", payload, exclude=websocket
    )


async def join_notifications(websocket: WebSocket, data: Any):
    user_id = _user_id(data)
    if user_id is None:
        logger.warning("joinNotifications without a user id, ignoring.")
        return
    if manager.join(websocket, f"user-{user_id}"):
        logger.info(f"Connection subscribed to notifications of user {user_id}.")


async def handle_frame(websocket: WebSocket, frame: Any):
    if not isinstance(frame, dict):
        logger.warning(f"Ignoring malformed frame: {frame}")
        return
    event = frame.get("event")
    data = frame.get("data")

    if event == "joinRoom":
        await join_room(websocket, data)
    elif event == "leaveRoom":
        await leave_room(websocket, data)
    elif event == "sendMessage":
        await send_message(websocket, data)
    elif event == "typing":
        await relay_typing(websocket, data, is_typing=True)
    elif event == "stopTyping":
        await relay_typing(websocket, data, is_typing=False)
    elif event == "joinNotifications":
        await join_notifications(websocket, data)
    else:
        logger.warning(f"Ignoring unknown event '{event}'.")


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await manager.connect(websocket)
    try:
        while True:
            try:
                frame = await websocket.receive_json()
            except ValueError as e:
                logger.warning(f"Ignoring non-JSON frame: {e}")
                continue
            await handle_frame(websocket, frame)
    except WebSocketDisconnect:
        logger.info("Connection closed.")
    finally:
        manager.disconnect(websocket)


@app.get("/")
def read_root():
    return {"message": "Welcome to the Ad Booking Realtime Relay"}
