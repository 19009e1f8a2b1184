"""Presence and typing state.

PresenceTracker maps each joined connection to its (username, room) pair
and keeps an explicit, insertion-ordered membership set per room, updated
in the same step as the connection's record. A connection is therefore
always a member of exactly one room between join and leave.

TypingTracker keeps, per room, the connections currently typing there.
Entries are removed on an explicit "stopped typing", on room switch and on
disconnect. An optional server-side expiry (``expire``) clears entries a
client forgot to retract.
"""
import logging
import time
from typing import Callable, Dict, List, Optional

from .rooms import RoomRegistry, TypingEntry
from .schemas import PresenceRecord

logger = logging.getLogger(__name__)


class PresenceTracker:
    """Live mapping of connections to (username, room)."""

    def __init__(self) -> None:
        # connection id -> PresenceRecord
        self._records: Dict[str, PresenceRecord] = {}
        # room -> ordered set of connection ids (dict keys keep join order)
        self._members: Dict[str, Dict[str, None]] = {}

    def join(self, conn_id: str, username: str, room: str) -> List[PresenceRecord]:
        """Record or overwrite a connection's (username, room).

        If the connection was in another room it is moved in one step.

        Returns:
            The updated user list of ``room``.
        """
        previous = self._records.get(conn_id)
        if previous is not None and previous.room != room:
            self._discard_member(previous.room, conn_id)

        self._records[conn_id] = PresenceRecord(id=conn_id, username=username, room=room)
        self._members.setdefault(room, {})[conn_id] = None
        return self.users_in(room)

    def leave(self, conn_id: str) -> Optional[PresenceRecord]:
        """Forget a connection. Returns its last record, if any."""
        record = self._records.pop(conn_id, None)
        if record is not None:
            self._discard_member(record.room, conn_id)
        return record

    def _discard_member(self, room: str, conn_id: str) -> None:
        members = self._members.get(room)
        if members is None:
            return
        members.pop(conn_id, None)
        if not members:
            del self._members[room]

    def get(self, conn_id: str) -> Optional[PresenceRecord]:
        return self._records.get(conn_id)

    def room_of(self, conn_id: str) -> Optional[str]:
        record = self._records.get(conn_id)
        return record.room if record else None

    def users_in(self, room: str) -> List[PresenceRecord]:
        """All connections currently in ``room``, in join order."""
        return [self._records[cid] for cid in self._members.get(room, {})]

    def member_ids(self, room: str) -> List[str]:
        return list(self._members.get(room, {}))

    def is_member(self, conn_id: str, room: str) -> bool:
        return conn_id in self._members.get(room, {})

    def all(self) -> List[PresenceRecord]:
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)


class TypingTracker:
    """Per-room sets of connections that are currently typing."""

    def __init__(
        self,
        rooms: RoomRegistry,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.rooms = rooms
        self._clock = clock or time.monotonic

    def set_typing(
        self, room: str, conn_id: str, username: str, is_typing: bool
    ) -> List[str]:
        """Add or remove a connection's typing entry in ``room``.

        Returns:
            Display names of everyone now typing in the room.
        """
        typing = self.rooms.state(room).typing
        if is_typing:
            typing[conn_id] = TypingEntry(username=username, updated_at=self._clock())
        else:
            typing.pop(conn_id, None)
        return self.users(room)

    def clear(self, room: str, conn_id: str) -> List[str]:
        """Remove any entry for ``conn_id`` in ``room`` and return the names left.

        Callers on a cleanup path should check ``is_typing`` first to avoid
        broadcasting an unchanged list.
        """
        self.rooms.state(room).typing.pop(conn_id, None)
        return self.users(room)

    def is_typing(self, room: str, conn_id: str) -> bool:
        return conn_id in self.rooms.state(room).typing

    def users(self, room: str) -> List[str]:
        return [entry.username for entry in self.rooms.state(room).typing.values()]

    def rooms_for(self, conn_id: str) -> List[str]:
        """Every room in which ``conn_id`` has a typing entry."""
        return [state.name for state in self.rooms.states() if conn_id in state.typing]

    def expire(self, max_age: float, now: Optional[float] = None) -> List[str]:
        """Drop entries not refreshed within ``max_age`` seconds.

        Returns:
            Names of the rooms whose typing set changed.
        """
        if max_age <= 0:
            return []
        now = self._clock() if now is None else now
        changed: List[str] = []
        for state in self.rooms.states():
            stale = [
                conn_id for conn_id, entry in state.typing.items()
                if now - entry.updated_at > max_age
            ]
            for conn_id in stale:
                del state.typing[conn_id]
            if stale:
                changed.append(state.name)
                logger.debug("[Typing] Expired %d stale entries in %s", len(stale), state.name)
        return changed
