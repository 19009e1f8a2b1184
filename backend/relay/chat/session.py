"""Per-connection protocol handling.

A ConnectionSession binds one transport connection to a username and a
room, and turns each inbound client event into mutations of the shared
state followed by broadcasts.

States::

    JOINING --user_join--> ACTIVE(room) --switch_room--> ACTIVE(room')
       |                        |
       +------- close ----------+--> DISCONNECTED

Malformed payloads are dropped without a reply: the protocol has no error
channel back to the client, and a bad frame must never close the
connection.

SECURITY: sender identity on every outgoing record comes from the session,
never from client-supplied fields.
"""
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError

from .broadcaster import JsonSocket
from .manager import ConnectionManager
from .schemas import (
    ANONYMOUS_SENDER,
    PRIVATE_ROOM,
    ClientEvent,
    JoinPayload,
    MessageReadPayload,
    PresenceRecord,
    PrivateMessagePayload,
    SendMessagePayload,
    ServerEvent,
    TypingPayload,
)

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    JOINING = "joining"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"


class ConnectionSession:
    """Protocol state machine for one client connection."""

    def __init__(
        self,
        manager: ConnectionManager,
        socket: JsonSocket,
        conn_id: Optional[str] = None,
    ) -> None:
        self.manager = manager
        self.socket = socket
        self.conn_id = conn_id or manager.new_connection_id()
        self.state = SessionState.JOINING
        self._handlers: Dict[str, Callable[[Any], Awaitable[None]]] = {
            ClientEvent.USER_JOIN.value: self.handle_join,
            ClientEvent.SWITCH_ROOM.value: self.handle_switch_room,
            ClientEvent.SEND_MESSAGE.value: self.handle_send_message,
            ClientEvent.TYPING.value: self.handle_typing,
            ClientEvent.PRIVATE_MESSAGE.value: self.handle_private_message,
            ClientEvent.MESSAGE_READ.value: self.handle_message_read,
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def user(self) -> Optional[PresenceRecord]:
        return self.manager.presence.get(self.conn_id)

    @property
    def room(self) -> Optional[str]:
        return self.manager.presence.room_of(self.conn_id)

    async def open(self) -> None:
        """Register the connection and greet it with its id and the room list."""
        broadcaster = self.manager.broadcaster
        broadcaster.register(self.conn_id, self.socket)
        await broadcaster.to_connection(self.conn_id, ServerEvent.CONNECTED, {"id": self.conn_id})
        await broadcaster.to_connection(self.conn_id, ServerEvent.ROOM_LIST, self.manager.rooms.presets)

    async def dispatch(self, frame: Any) -> None:
        """Route one inbound ``{"type", "data"}`` frame to its handler."""
        if not isinstance(frame, dict):
            logger.debug("[Session %s] Dropped non-object frame", self.conn_id)
            return

        event = frame.get("type")
        handler = self._handlers.get(event) if isinstance(event, str) else None
        if handler is None:
            logger.debug("[Session %s] Dropped unknown event %r", self.conn_id, event)
            return

        try:
            await handler(frame.get("data"))
        except (ValidationError, ValueError, TypeError) as exc:
            logger.debug(
                "[Session %s] Dropped malformed %s payload: %s",
                self.conn_id, event, exc,
            )

    async def close(self) -> None:
        """Tear down after the transport closed. Safe to call more than once."""
        if self.state == SessionState.DISCONNECTED:
            return
        self.state = SessionState.DISCONNECTED
        manager = self.manager
        manager.broadcaster.unregister(self.conn_id)

        user = self.user
        if user is None:
            return

        for typing_room in manager.typing.rooms_for(self.conn_id):
            manager.typing.clear(typing_room, self.conn_id)
            await manager.broadcast_typing(typing_room)

        await manager.broadcaster.to_room(
            user.room,
            ServerEvent.USER_LEFT,
            {"username": user.username, "id": self.conn_id, "room": user.room},
        )
        manager.presence.leave(self.conn_id)
        await manager.broadcast_user_list(user.room)
        logger.info(f"[Session] {user.username} ({self.conn_id}) left {user.room}")

    # =========================================================================
    # Handlers
    # =========================================================================

    async def handle_join(self, data: Any) -> None:
        """``user_join``: register presence and enter a room."""
        if isinstance(data, str):
            data = {"username": data}
        payload = JoinPayload.model_validate(data)
        room = self.manager.rooms.ensure(payload.room)

        previous = self.user
        previous_room = previous.room if previous is not None and previous.room != room else None
        await self._enter_room(payload.username, room, previous_room=previous_room)

    async def handle_switch_room(self, data: Any) -> None:
        """``switch_room``: move an already-joined connection to another room."""
        user = self.user
        if user is None:
            return
        if isinstance(data, dict):
            data = data.get("room")
        room = self.manager.rooms.ensure(data)
        if room == user.room:
            return
        await self._enter_room(user.username, room, previous_room=user.room)

    async def _enter_room(
        self, username: str, room: str, previous_room: Optional[str] = None
    ) -> None:
        manager = self.manager
        stale_typing = []
        if previous_room is not None:
            stale_typing = [r for r in manager.typing.rooms_for(self.conn_id) if r != room]
            for typing_room in stale_typing:
                manager.typing.clear(typing_room, self.conn_id)

        # Moves membership in one step: never in two rooms, never in none.
        manager.presence.join(self.conn_id, username, room)
        self.state = SessionState.ACTIVE

        if previous_room is not None:
            for typing_room in stale_typing:
                await manager.broadcast_typing(typing_room)
            await manager.broadcaster.to_room(
                previous_room,
                ServerEvent.USER_LEFT,
                {"username": username, "id": self.conn_id, "room": previous_room},
            )
            await manager.broadcast_user_list(previous_room)
            logger.info(f"[Session] {username} switched from {previous_room} to {room}")
        else:
            logger.info(f"[Session] {username} ({self.conn_id}) joined {room}")

        await manager.broadcast_user_list(room)
        await manager.broadcaster.to_room(
            room,
            ServerEvent.USER_JOINED,
            {"username": username, "id": self.conn_id, "room": room},
        )
        await manager.broadcaster.to_connection(
            self.conn_id, ServerEvent.ROOM_JOINED, manager.room_snapshot(room)
        )

    async def handle_send_message(self, data: Any) -> None:
        """``send_message``: store a message and broadcast it to its room."""
        payload = SendMessagePayload.model_validate(data)
        if not payload.has_body():
            return

        manager = self.manager
        user = self.user
        room = manager.rooms.ensure(payload.room or (user.room if user else None))

        # SECURITY: sender is stamped from the session, not from the payload
        message = manager.store.create(
            room=room,
            sender=user.username if user else ANONYMOUS_SENDER,
            sender_id=self.conn_id,
            message=payload.message,
            file=payload.file,
        )
        manager.store.append(room, message)
        logger.debug(f"[Session] Message {message.id} from {self.conn_id} in {room}")

        await manager.broadcaster.to_room(room, ServerEvent.RECEIVE_MESSAGE, message)
        # The sender always sees the canonical stored copy
        if not manager.presence.is_member(self.conn_id, room):
            await manager.broadcaster.to_connection(
                self.conn_id, ServerEvent.RECEIVE_MESSAGE, message
            )

    async def handle_typing(self, data: Any) -> None:
        """``typing``: update the typing set of the target room."""
        user = self.user
        if user is None:
            return
        if isinstance(data, bool):
            payload = TypingPayload(isTyping=data)
        else:
            payload = TypingPayload.model_validate(data)

        room = self.manager.rooms.ensure(payload.room or user.room)
        self.manager.typing.set_typing(room, self.conn_id, user.username, payload.isTyping)
        await self.manager.broadcast_typing(room)

    async def handle_private_message(self, data: Any) -> None:
        """``private_message``: unicast to the recipient and echo to the sender.

        Private messages are never stored, so they cannot be paged back in
        through history.
        """
        payload = PrivateMessagePayload.model_validate(data)
        if not payload.has_body():
            return

        user = self.user
        message = self.manager.store.create(
            room=PRIVATE_ROOM,
            sender=user.username if user else ANONYMOUS_SENDER,
            sender_id=self.conn_id,
            message=payload.message,
            file=payload.file,
            is_private=True,
        )
        broadcaster = self.manager.broadcaster
        if payload.to != self.conn_id:
            await broadcaster.to_connection(payload.to, ServerEvent.PRIVATE_MESSAGE, message)
        await broadcaster.to_connection(self.conn_id, ServerEvent.PRIVATE_MESSAGE, message)

    async def handle_message_read(self, data: Any) -> None:
        """``message_read``: record a read receipt and notify room and sender."""
        payload = MessageReadPayload.model_validate(data)
        message_id = payload.message_id()
        if message_id is None:
            return

        result = self.manager.store.mark_read(message_id, self.conn_id)
        if result is None:
            return
        room, sender_id = result

        receipt = {"messageId": message_id, "readerId": self.conn_id, "room": room}
        broadcaster = self.manager.broadcaster
        await broadcaster.to_room(room, ServerEvent.MESSAGE_READ, receipt)
        # Sender may have left the room since sending
        if not self.manager.presence.is_member(sender_id, room):
            await broadcaster.to_connection(sender_id, ServerEvent.MESSAGE_READ, receipt)
