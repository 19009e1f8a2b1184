"""Room registry: known room names and their lazily-created state.

Rooms are created on first reference (join, switch, send, typing, history
read) or from the configured presets at startup, and live for the rest of
the process. There is no delete operation.
"""
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Optional

from .schemas import ChatMessage

logger = logging.getLogger(__name__)


@dataclass
class TypingEntry:
    """One connection currently typing in a room."""
    username: str
    updated_at: float


@dataclass
class RoomState:
    """Mutable per-room state.

    Attributes:
        name: Room name.
        messages: Bounded message log, oldest first.
        typing: connection id -> TypingEntry for connections typing here.
    """
    name: str
    messages: Deque[ChatMessage] = field(default_factory=deque)
    typing: Dict[str, TypingEntry] = field(default_factory=dict)


class RoomRegistry:
    """Holds every known room and normalises client-supplied room names."""

    def __init__(self, default_room: str = "general", presets: Iterable[str] = ()) -> None:
        self.default_room = default_room.strip() or "general"
        self.presets: List[str] = []
        self._rooms: Dict[str, RoomState] = {}

        for room in presets:
            name = self.ensure(room)
            if name not in self.presets:
                self.presets.append(name)
        self.ensure(self.default_room)

    def normalize(self, room: Optional[object]) -> str:
        """Map a client-supplied room name to a real one.

        Non-strings and blank names fall back to the default room; anything
        else is stripped of surrounding whitespace. Names are case-sensitive.
        """
        if not isinstance(room, str) or not room.strip():
            return self.default_room
        return room.strip()

    def ensure(self, room: Optional[object]) -> str:
        """Create state for ``room`` if missing and return its normalised name."""
        name = self.normalize(room)
        if name not in self._rooms:
            self._rooms[name] = RoomState(name=name)
            logger.debug("[Rooms] Created room %s", name)
        return name

    def state(self, room: Optional[object]) -> RoomState:
        """Return the state for ``room``, creating it if needed."""
        return self._rooms[self.ensure(room)]

    def exists(self, room: str) -> bool:
        return room in self._rooms

    def names(self) -> List[str]:
        return list(self._rooms)

    def states(self) -> List[RoomState]:
        return list(self._rooms.values())
