import logging
from collections import defaultdict
from typing import Any, Optional

from fastapi import WebSocket

logger = logging.getLogger("adrelay")


class ConnectionManager:
    """
    Tracks open sockets and the rooms each one has joined.
    Memberships live only as long as the connection; a reconnecting client joins again.
    """

    def __init__(self):
        self.active_connections: set[WebSocket] = set()
        self.rooms: dict[str, set[WebSocket]] = defaultdict(set)
        self.memberships: dict[WebSocket, set[str]] = defaultdict(set)

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.add(websocket)

    def disconnect(self, websocket: WebSocket):
        for room_id in self.memberships.pop(websocket, set()):
            members = self.rooms.get(room_id)
            if members is not None:
                members.discard(websocket)
                if not members:
                    del self.rooms[room_id]
        self.active_connections.discard(websocket)

    def join(self, websocket: WebSocket, room_id: str) -> bool:
        """Returns False when the connection is already in the room."""
        if room_id in self.memberships[websocket]:
            return False
        self.memberships[websocket].add(room_id)
        self.rooms[room_id].add(websocket)
        return True

    def leave(self, websocket: WebSocket, room_id: str) -> bool:
        if room_id not in self.memberships.get(websocket, set()):
            return False
        self.memberships[websocket].discard(room_id)
        members = self.rooms.get(room_id)
        if members is not None:
            members.discard(websocket)
            if not members:
                del self.rooms[room_id]
        return True

    def members(self, room_id: str) -> set[WebSocket]:
        return set(self.rooms.get(room_id, set()))

    async def send_personal(self, websocket: WebSocket, event: str, data: Any) -> bool:
        try:
            await websocket.send_json({"event": event, "data": data})
            return True
        except Exception as e:
            logger.warning(f"Dropping connection after failed send of '{event}': {e}")
            self.disconnect(websocket)
            return False

    async def broadcast_room(
            self,
            room_id: str,
            event: str,
            data: Any,
            exclude: Optional[WebSocket] = None,
    ) -> int:
        delivered = 0
        for websocket in self.members(room_id):
            if websocket is exclude:
                continue
            if await self.send_personal(websocket, event, data):
                delivered += 1
        return delivered

    async def broadcast_all(self, event: str, data: Any) -> int:
        delivered = 0
        for websocket in list(self.active_connections):
            if await self.send_personal(websocket, event, data):
                delivered += 1
        return delivered
