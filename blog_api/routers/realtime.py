import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from blog_api import database
from blog_api.dependencies import load_user_from_token
from blog_api.errors import AppError
from blog_api.realtime import ADMIN_ROOM, ConnectionManager, post_room, user_room

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


async def _authenticate(token: str | None):
    if not token:
        return None
    async with database.async_session() as session:
        try:
            return await load_user_from_token(session, token)
        except AppError as exc:
            logger.info("Rejected socket authentication: %s", exc)
            return None


def _post_id(data) -> int | None:
    try:
        return int(data)
    except (TypeError, ValueError):
        return None


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: str | None = None):
    """
    Real-time channel.

    Clients connect with ``?token=<jwt>`` and send
    ``{"event": "join_post" | "leave_post", "data": <post id>}``.
    """
    user = await _authenticate(token)
    if user is None:
        await websocket.close(code=1008)
        return

    manager: ConnectionManager = websocket.app.state.realtime
    await websocket.accept()
    manager.join(user_room(user.id), websocket)
    if user.is_admin:
        manager.join(ADMIN_ROOM, websocket)
    logger.info("User %s connected to realtime channel", user.id)

    try:
        while True:
            message = await websocket.receive_json()
            if not isinstance(message, dict):
                continue
            post_id = _post_id(message.get("data"))
            if post_id is None:
                continue
            if message.get("event") == "join_post":
                manager.join(post_room(post_id), websocket)
            elif message.get("event") == "leave_post":
                manager.leave(post_room(post_id), websocket)
    except WebSocketDisconnect:
        pass
    except ValueError as exc:
        logger.info("Closing socket for user %s after bad frame: %s", user.id, exc)
    finally:
        manager.disconnect(websocket)
        logger.info("User %s disconnected from realtime channel", user.id)
