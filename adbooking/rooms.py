import re
from typing import NamedTuple, Optional

# Room keys are shared with every realtime client, keep the formats stable.
_COMMERCIAL_ROOM = re.compile(r"^commercial-agent-(?P<agent_id>\d+)-app-(?P<application_id>.+)$")
_APPLICATION_ROOM = re.compile(r"^application-(?P<application_id>.+)$")
_USER_ROOM = re.compile(r"^user-(?P<user_id>\d+)$")

CUSTOMER_AGENT = "customer-agent"
AGENT_COMMERCIAL = "agent-commercial"


class RoomKey(NamedTuple):
    chat_type: str
    application_id: Optional[str] = None
    agent_id: Optional[int] = None
    user_id: Optional[int] = None


def application_room(application_id: str) -> str:
    return f"application-{application_id}"


def commercial_room(agent_id: int, application_id: str) -> str:
    return f"commercial-agent-{agent_id}-app-{application_id}"


def user_room(user_id: int) -> str:
    return f"user-{user_id}"


def parse_room(room_id: str) -> Optional[RoomKey]:
    match = _COMMERCIAL_ROOM.match(room_id)
    if match:
        return RoomKey(AGENT_COMMERCIAL, match["application_id"], agent_id=int(match["agent_id"]))
    match = _APPLICATION_ROOM.match(room_id)
    if match:
        return RoomKey(CUSTOMER_AGENT, match["application_id"])
    match = _USER_ROOM.match(room_id)
    if match:
        return RoomKey("user", user_id=int(match["user_id"]))
    return None
