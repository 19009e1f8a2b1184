"""In-memory message store: bounded per-room logs plus a global id index.

Each room keeps its messages in arrival order, capped at ``history_limit``.
When a room log overflows, the oldest message is evicted and its id is
removed from the global index, so read receipts for evicted messages become
silent no-ops.

Ids come from a process-wide counter and timestamps are forced to be
strictly increasing, so two messages never share either. That makes the
timestamp a safe pagination cursor: "everything before X" never splits a
pair of same-instant messages across pages.

Thread Safety:
    Designed for a single asyncio event loop; no method awaits, so every
    operation is atomic with respect to other handlers. Not thread-safe.
"""
import itertools
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple, Union

from .rooms import RoomRegistry
from .schemas import ChatMessage, FileAttachment

logger = logging.getLogger(__name__)

# Default cap on messages kept per room
DEFAULT_HISTORY_LIMIT = 200

Cursor = Union[datetime, int, float]


def _as_utc(cursor: Cursor) -> datetime:
    if isinstance(cursor, (int, float)):
        return datetime.fromtimestamp(cursor, tz=timezone.utc)
    if cursor.tzinfo is None:
        return cursor.replace(tzinfo=timezone.utc)
    return cursor


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageStore:
    """Per-room bounded message logs with O(1) lookup by message id."""

    def __init__(
        self,
        rooms: RoomRegistry,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if history_limit < 1:
            raise ValueError("history_limit must be at least 1")
        self.rooms = rooms
        self.history_limit = history_limit
        self._clock = clock or _utcnow
        self._ids = itertools.count(1)
        self._last_ts: Optional[datetime] = None
        # message id -> message, only for messages still held in a room log
        self._index: Dict[int, ChatMessage] = {}

    # =========================================================================
    # Message construction
    # =========================================================================

    def next_id(self) -> int:
        return next(self._ids)

    def next_timestamp(self) -> datetime:
        """Current UTC time, nudged forward if the clock has not advanced."""
        now = _as_utc(self._clock())
        if self._last_ts is not None and now <= self._last_ts:
            now = self._last_ts + timedelta(microseconds=1)
        self._last_ts = now
        return now

    def create(
        self,
        room: str,
        sender: str,
        sender_id: str,
        message: Optional[str] = None,
        file: Optional[FileAttachment] = None,
        is_private: bool = False,
    ) -> ChatMessage:
        """Build a message with a fresh id and timestamp (not stored)."""
        return ChatMessage(
            id=self.next_id(),
            room=room,
            sender=sender,
            senderId=sender_id,
            message=message,
            file=file,
            timestamp=self.next_timestamp(),
            isPrivate=is_private,
        )

    # =========================================================================
    # Log operations
    # =========================================================================

    def append(self, room: str, message: ChatMessage) -> ChatMessage:
        """Append a message to a room log, evicting the oldest above the cap.

        Args:
            room: Target room (created if unknown).
            message: Message to store. Its ``room`` is set to the
                normalised room name.

        Returns:
            The stored message.
        """
        state = self.rooms.state(room)
        message.room = state.name
        message.timestamp = _as_utc(message.timestamp)
        if state.messages and message.timestamp <= state.messages[-1].timestamp:
            message.timestamp = self.next_timestamp()

        state.messages.append(message)
        self._index[message.id] = message

        while len(state.messages) > self.history_limit:
            evicted = state.messages.popleft()
            if self._index.get(evicted.id) is evicted:
                del self._index[evicted.id]
            logger.debug("[Store] Evicted message %s from room %s", evicted.id, state.name)

        return message

    def _pool(self, room: str, before: Optional[Cursor]) -> List[ChatMessage]:
        messages = self.rooms.state(room).messages
        if before is None:
            return list(messages)
        cursor = _as_utc(before)
        return [msg for msg in messages if msg.timestamp < cursor]

    def recent(
        self, room: str, limit: int, before: Optional[Cursor] = None
    ) -> List[ChatMessage]:
        """Get up to ``limit`` messages, oldest first.

        Args:
            room: Room to read.
            limit: Maximum number of messages.
            before: Cursor; only messages strictly older than it are
                considered. ``None`` means the latest messages.

        Returns:
            The newest ``limit`` messages matching the cursor, in
            chronological order.
        """
        if limit <= 0:
            return []
        return self._pool(room, before)[-limit:]

    def has_more(self, room: str, limit: int, before: Optional[Cursor] = None) -> bool:
        """Whether older messages exist beyond what ``recent`` returns."""
        return len(self._pool(room, before)) > max(limit, 0)

    def page(
        self, room: str, limit: int, before: Optional[Cursor] = None
    ) -> Tuple[List[ChatMessage], bool]:
        """``recent`` and ``has_more`` in one pass."""
        pool = self._pool(room, before)
        limit = max(limit, 0)
        return (pool[-limit:] if limit else [], len(pool) > limit)

    def get(self, message_id: int) -> Optional[ChatMessage]:
        return self._index.get(message_id)

    def count(self, room: str) -> int:
        return len(self.rooms.state(room).messages)

    # =========================================================================
    # Read Receipts
    # =========================================================================

    def mark_read(self, message_id: int, reader_id: str) -> Optional[Tuple[str, str]]:
        """Record that ``reader_id`` has read a message.

        Returns:
            ``(room, sender_id)`` when the reader was newly added, ``None``
            when the message is unknown (never sent or evicted) or the reader
            had already been recorded.
        """
        message = self._index.get(message_id)
        if message is None:
            logger.debug("[Store] Read receipt for unknown message %s", message_id)
            return None
        if reader_id in message.readBy:
            return None
        message.readBy.append(reader_id)
        return (message.room, message.senderId)
