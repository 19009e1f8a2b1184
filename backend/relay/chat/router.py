"""Chat router providing the WebSocket endpoint and read-only HTTP endpoints.

This module provides:
    - WebSocket /ws: Real-time chat relay
    - GET /api/messages: Paginated room history
    - GET /api/rooms: Preset rooms and the default room
    - GET /api/users: Presence records of every joined connection

The WebSocket protocol wraps every frame as ``{"type": ..., "data": ...}``.

Client events:
    - user_join: ``{username, room?}`` or a bare username string
    - switch_room: room name
    - send_message: ``{message?, file?, room?}``
    - typing: boolean or ``{isTyping, room?}``
    - private_message: ``{to, message?, file?}``
    - message_read: ``{messageId, room?}``

Server events:
    - connected, room_list (on connect)
    - room_joined, user_list, user_joined, user_left
    - receive_message, typing_users, private_message, message_read
"""
import json
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, PlainTextResponse

from .broadcaster import encode
from .manager import get_manager
from .session import ConnectionSession

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", response_class=PlainTextResponse)
async def index() -> str:
    """Plain-text liveness message."""
    return "Chat relay server is running"


@router.get("/api/messages")
async def get_message_history(
    room: Optional[str] = Query(None, description="Room name (defaults to the default room)"),
    limit: Optional[int] = Query(None, ge=1, description="Number of messages to return"),
    before: Optional[datetime] = Query(None, description="Timestamp cursor (get messages before this time)"),
) -> JSONResponse:
    """Get paginated message history for a room.

    Clients fetch older messages by passing the ``timestamp`` of the oldest
    message they currently hold as ``before``. Private messages are never
    stored and never appear here.

    Args:
        room: Room name. Unknown rooms are created empty.
        limit: Page size, capped at the configured maximum.
        before: ISO-8601 datetime or unix timestamp cursor.

    Returns:
        JSON with room, messages (oldest first) and hasMore.

    Example:
        GET /api/messages?room=general&limit=25
        GET /api/messages?room=general&before=2024-02-07T16:00:00.123Z
    """
    manager = get_manager()
    room_name = manager.rooms.ensure(room)
    messages, has_more = manager.store.page(room_name, manager.clamp_limit(limit), before)

    return JSONResponse({
        "room": room_name,
        "messages": encode(messages),
        "hasMore": has_more,
    })


@router.get("/api/rooms")
async def get_rooms() -> dict:
    """Preset room names and the default room."""
    manager = get_manager()
    return {"rooms": manager.rooms.presets, "defaultRoom": manager.default_room}


@router.get("/api/users")
async def get_users() -> list:
    """Presence records for every joined connection."""
    return encode(get_manager().presence.all())


@router.websocket("/ws")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for one chat client.

    Protocol Flow:
        1. Client connects -> server sends ``connected`` ({id}) and
           ``room_list``.
        2. Client sends ``user_join`` -> room gets ``user_list`` and
           ``user_joined``; the client gets ``room_joined``.
        3. Further events are handled by the ConnectionSession.
        4. On disconnect -> typing cleanup, ``user_left``, ``user_list``.

    Args:
        websocket: The WebSocket connection.
    """
    await websocket.accept()
    manager = get_manager()
    session = ConnectionSession(manager, websocket)

    try:
        await session.open()
        logger.info(
            f"[WS] Connection accepted: {session.conn_id} "
            f"({manager.broadcaster.connection_count()} open)"
        )

        # Main message loop
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            try:
                data = json.loads(raw)
            except (ValueError, RecursionError):
                logger.debug("[WS] %s sent an undecodable frame", session.conn_id)
                continue
            logger.debug("[WS] %s received: type=%s", session.conn_id,
                         data.get("type", "?") if isinstance(data, dict) else "?")
            await session.dispatch(data)

    except WebSocketDisconnect:
        logger.info(f"[WS] Connection closed: {session.conn_id}")
    finally:
        await session.close()
