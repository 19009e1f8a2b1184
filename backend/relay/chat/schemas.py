"""Pydantic schemas for the chat relay wire protocol.

Every WebSocket frame, in both directions, is a JSON object of the form
``{"type": <event name>, "data": <payload>}``. This module defines the event
names, the records the server sends (messages, presence) and the payloads
it accepts from clients.

Field names are camelCase because they are the wire format consumed by the
browser client.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, Field, StrictInt, field_validator

# Pseudo-room carried by private messages; never stored server-side.
PRIVATE_ROOM = "private"

# Sender name used when a connection sends before joining.
ANONYMOUS_SENDER = "Anonymous"


class ClientEvent(str, Enum):
    """Events a client may send."""
    USER_JOIN = "user_join"
    SWITCH_ROOM = "switch_room"
    SEND_MESSAGE = "send_message"
    TYPING = "typing"
    PRIVATE_MESSAGE = "private_message"
    MESSAGE_READ = "message_read"


class ServerEvent(str, Enum):
    """Events the server emits."""
    CONNECTED = "connected"
    ROOM_LIST = "room_list"
    ROOM_JOINED = "room_joined"
    USER_LIST = "user_list"
    USER_JOINED = "user_joined"
    USER_LEFT = "user_left"
    RECEIVE_MESSAGE = "receive_message"
    TYPING_USERS = "typing_users"
    PRIVATE_MESSAGE = "private_message"
    MESSAGE_READ = "message_read"


# =============================================================================
# Records
# =============================================================================


class PresenceRecord(BaseModel):
    """A live connection and where it currently is.

    Attributes:
        id: Server-assigned connection id.
        username: Display name chosen by the client (not unique).
        room: The one room the connection is a member of.
    """
    id: str
    username: str
    room: str


class FileAttachment(BaseModel):
    """A file sent inline with a message.

    The payload is already encoded by the client (a data URL); the server
    relays it untouched.
    """
    name: str = Field(default="file", description="Original filename")
    type: str = Field(default="application/octet-stream", description="MIME type")
    data: str = Field(..., description="Inline-encoded file content")
    size: Optional[int] = Field(default=None, ge=0, description="Size in bytes")


class ChatMessage(BaseModel):
    """A chat message as stored in a room log and broadcast to clients.

    ``sender`` and ``senderId`` are always stamped by the server from the
    sending connection. ``readBy`` only grows, and never holds duplicates.
    """
    id: int = Field(..., description="Process-unique message id")
    room: str = Field(..., description="Room the message belongs to")
    sender: str = Field(..., description="Display name of the sender")
    senderId: str = Field(..., description="Connection id of the sender")
    message: Optional[str] = Field(default=None, description="Message text")
    file: Optional[FileAttachment] = Field(default=None, description="Attached file")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Server receive time (UTC)"
    )
    isPrivate: bool = Field(default=False, description="Direct message flag")
    readBy: List[str] = Field(default_factory=list, description="Reader connection ids")


class RoomSnapshot(BaseModel):
    """Reply sent to a connection when it enters a room."""
    room: str
    users: List[PresenceRecord]
    messages: List[ChatMessage]
    hasMore: bool


# =============================================================================
# Client payloads
# =============================================================================


def _blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value


class JoinPayload(BaseModel):
    """``user_join`` payload. A bare string is accepted as the username."""
    username: str = Field(..., min_length=1)
    room: Optional[str] = None

    @field_validator("username")
    @classmethod
    def username_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("username must not be blank")
        return value


class SendMessagePayload(BaseModel):
    """``send_message`` payload. Any client-supplied sender field is ignored."""
    message: Optional[str] = None
    file: Optional[FileAttachment] = None
    room: Optional[str] = None

    @field_validator("room", mode="before")
    @classmethod
    def normalize_room(cls, value):
        return _blank_to_none(value)

    def has_body(self) -> bool:
        return bool(self.message) or self.file is not None


class TypingPayload(BaseModel):
    """``typing`` payload. A bare boolean means "in my current room"."""
    isTyping: bool = False
    room: Optional[str] = None

    @field_validator("room", mode="before")
    @classmethod
    def normalize_room(cls, value):
        return _blank_to_none(value)


class PrivateMessagePayload(BaseModel):
    """``private_message`` payload."""
    to: str = Field(..., min_length=1)
    message: Optional[str] = None
    file: Optional[FileAttachment] = None

    def has_body(self) -> bool:
        return bool(self.message) or self.file is not None


class MessageReadPayload(BaseModel):
    """``message_read`` payload. ``room`` is accepted but not trusted."""
    messageId: Union[StrictInt, str]
    room: Optional[str] = None

    def message_id(self) -> Optional[int]:
        try:
            return int(self.messageId)
        except (TypeError, ValueError):
            return None
