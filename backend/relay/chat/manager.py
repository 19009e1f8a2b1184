"""Connection manager: the owned state container for the chat relay.

This module bundles the room registry, presence, typing, message store and
broadcaster into one object whose lifetime is the process. WebSocket
sessions and the HTTP endpoints reach all shared state through it, so no
module keeps hidden globals of its own.

Thread Safety:
    This implementation is designed for async/await usage with a single
    event loop. State is only mutated synchronously between awaits, which
    serialises every handler's mutations. It is NOT thread-safe for
    concurrent access from multiple threads.
"""
import logging
import uuid
from typing import Iterable, List, Optional

from relay.config import ChatSettings, get_config

from .broadcaster import Broadcaster
from .presence import PresenceTracker, TypingTracker
from .rooms import RoomRegistry
from .schemas import RoomSnapshot, ServerEvent
from .store import DEFAULT_HISTORY_LIMIT, MessageStore

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

# Messages sent with a room snapshot on join/switch
DEFAULT_PAGE_SIZE = 25

# Largest page the HTTP history endpoint serves
MAX_PAGE_SIZE = 200


class ConnectionManager:
    """Owns all room, presence, typing and message state.

    Attributes:
        rooms: Known rooms and their per-room state.
        presence: Connection -> (username, room), plus per-room membership.
        typing: Per-room typing sets.
        store: Bounded per-room message logs and the global id index.
        broadcaster: Delivers events to rooms and single connections.
    """

    def __init__(
        self,
        default_room: str = "general",
        preset_rooms: Iterable[str] = ("general", "tech", "gaming", "support"),
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_page_size: int = MAX_PAGE_SIZE,
        typing_timeout_seconds: float = 0.0,
    ) -> None:
        self.rooms = RoomRegistry(default_room, preset_rooms)
        self.presence = PresenceTracker()
        self.typing = TypingTracker(self.rooms)
        self.store = MessageStore(self.rooms, history_limit)
        self.broadcaster = Broadcaster(self.presence)
        self.page_size = page_size
        self.max_page_size = max_page_size
        self.typing_timeout_seconds = typing_timeout_seconds

    @classmethod
    def from_settings(cls, settings: ChatSettings) -> "ConnectionManager":
        return cls(
            default_room=settings.default_room,
            preset_rooms=settings.preset_rooms,
            history_limit=settings.history_limit,
            page_size=settings.page_size,
            max_page_size=settings.max_page_size,
            typing_timeout_seconds=settings.typing_timeout_seconds,
        )

    @property
    def default_room(self) -> str:
        return self.rooms.default_room

    @staticmethod
    def new_connection_id() -> str:
        # SECURITY: connection ids are assigned by the server, never by clients
        return str(uuid.uuid4())

    def room_snapshot(self, room: str) -> RoomSnapshot:
        """Membership plus the latest page of history for ``room``."""
        messages, has_more = self.store.page(room, self.page_size)
        return RoomSnapshot(
            room=room,
            users=self.presence.users_in(room),
            messages=messages,
            hasMore=has_more,
        )

    def clamp_limit(self, limit: Optional[int]) -> int:
        """Bound a client-requested page size to ``1..max_page_size``."""
        if limit is None:
            return self.page_size
        return max(1, min(limit, self.max_page_size))

    # =========================================================================
    # Broadcast helpers
    # =========================================================================

    async def broadcast_user_list(self, room: str) -> None:
        await self.broadcaster.to_room(
            room,
            ServerEvent.USER_LIST,
            {"room": room, "users": self.presence.users_in(room)},
        )

    async def broadcast_typing(self, room: str) -> None:
        await self.broadcaster.to_room(
            room,
            ServerEvent.TYPING_USERS,
            {"room": room, "users": self.typing.users(room)},
        )

    async def expire_typing(self) -> List[str]:
        """Drop stale typing entries and re-broadcast the affected rooms."""
        changed = self.typing.expire(self.typing_timeout_seconds)
        for room in changed:
            await self.broadcast_typing(room)
        return changed


# =============================================================================
# Process-wide instance
# =============================================================================

_manager: Optional[ConnectionManager] = None


def get_manager() -> ConnectionManager:
    """Return the process-wide manager, building it from config on first use."""
    global _manager
    if _manager is None:
        _manager = ConnectionManager.from_settings(get_config().chat)
        logger.info(
            "[Manager] Ready: default_room=%s rooms=%s history_limit=%d",
            _manager.default_room,
            ",".join(_manager.rooms.presets),
            _manager.store.history_limit,
        )
    return _manager


def set_manager(manager: Optional[ConnectionManager]) -> None:
    """Install (or with ``None``, forget) the process-wide manager."""
    global _manager
    _manager = manager
