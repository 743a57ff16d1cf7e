"""
Real-time channel: WebSocket connections grouped into rooms.

Rooms in use:

- ``user_{id}`` : every connection of one user (personal notifications)
- ``admin_room``: connections of admin users
- ``post_{id}`` : readers currently viewing a post (new comments)

Delivery is at-most-once. ``publish`` sends to every member concurrently
and never raises; a socket that fails or stalls past ``SEND_TIMEOUT_SECONDS``
is dropped from every room.
"""
import asyncio
import logging
from collections import defaultdict

from fastapi import WebSocket

logger = logging.getLogger(__name__)

ADMIN_ROOM = "admin_room"
SEND_TIMEOUT_SECONDS = 5.0


def user_room(user_id: int) -> str:
    return f"user_{user_id}"


def post_room(post_id: int) -> str:
    return f"post_{post_id}"


class ConnectionManager:
    def __init__(self) -> None:
        self._rooms: dict[str, set[WebSocket]] = defaultdict(set)

    def join(self, room: str, websocket: WebSocket) -> None:
        self._rooms[room].add(websocket)
        logger.debug("Socket joined %s (%d members)", room, len(self._rooms[room]))

    def leave(self, room: str, websocket: WebSocket) -> None:
        members = self._rooms.get(room)
        if members is None:
            return
        members.discard(websocket)
        if not members:
            del self._rooms[room]

    def disconnect(self, websocket: WebSocket) -> None:
        for room in list(self._rooms):
            self.leave(room, websocket)

    def room_size(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    async def publish(self, room: str, event: str, payload: dict) -> int:
        """Send ``{"event", "data"}`` to every socket in *room*; return deliveries."""
        members = list(self._rooms.get(room, ()))
        if not members:
            return 0
        message = {"event": event, "data": payload}
        results = await asyncio.gather(
            *(asyncio.wait_for(ws.send_json(message), SEND_TIMEOUT_SECONDS) for ws in members),
            return_exceptions=True,
        )
        delivered = 0
        for websocket, result in zip(members, results):
            if isinstance(result, BaseException):
                logger.warning("Dropping socket from %s after send failure: %r", room, result)
                self.disconnect(websocket)
            else:
                delivered += 1
        return delivered

