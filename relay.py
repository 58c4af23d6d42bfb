import logging
from typing import Any, Dict, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ChatRelay:
    """Fire-and-forget fan-out of chat events to websockets grouped by chat id.

    There is no acknowledgement or offline queue; a socket that is not
    connected when an event is published simply misses it.
    """

    def __init__(self):
        self.rooms: Dict[str, Set[WebSocket]] = {}

    def join(self, room: str, ws: WebSocket):
        self.rooms.setdefault(room, set()).add(ws)

    def leave(self, room: str, ws: WebSocket):
        members = self.rooms.get(room)
        if not members:
            return
        members.discard(ws)
        if not members:
            del self.rooms[room]

    async def publish(self, room: str, event: str, data: Dict[str, Any]):
        for ws in list(self.rooms.get(room, ())):
            try:
                await ws.send_json({"event": event, "data": data})
            except Exception as e:
                logger.warning("Dropping socket in room %s: %s", room, e)
                self.leave(room, ws)


relay = ChatRelay()


def get_relay() -> ChatRelay:
    return relay
