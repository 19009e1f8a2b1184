"""Fan-out of server events to connections.

Delivery is fire-and-forget: a send that fails (peer gone, socket closed)
is logged at DEBUG and the socket is unregistered, but the failure never
reaches the caller. Nothing is retried.

Room fan-out uses asyncio.gather() so one slow peer does not serialise
delivery to the rest of the room.
"""
import asyncio
import logging
from enum import Enum
from typing import Any, Dict, Iterable, List, Protocol, Union

from pydantic import BaseModel

from .presence import PresenceTracker

logger = logging.getLogger(__name__)


class JsonSocket(Protocol):
    """The part of a WebSocket the broadcaster needs."""

    async def send_json(self, data: Any) -> None: ...


def encode(payload: Any) -> Any:
    """Convert models (or lists of them) to JSON-ready data."""
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json")
    if isinstance(payload, (list, tuple)):
        return [encode(item) for item in payload]
    if isinstance(payload, dict):
        return {key: encode(value) for key, value in payload.items()}
    return payload


def frame(event: Union[str, Enum], payload: Any) -> Dict[str, Any]:
    """Build the ``{"type", "data"}`` envelope sent over the wire."""
    name = event.value if isinstance(event, Enum) else event
    return {"type": name, "data": encode(payload)}


class Broadcaster:
    """Delivers events to a room (per PresenceTracker) or to one connection."""

    def __init__(self, presence: PresenceTracker) -> None:
        self.presence = presence
        # connection id -> socket
        self._sockets: Dict[str, JsonSocket] = {}

    def register(self, conn_id: str, socket: JsonSocket) -> None:
        self._sockets[conn_id] = socket

    def unregister(self, conn_id: str) -> None:
        self._sockets.pop(conn_id, None)

    def is_connected(self, conn_id: str) -> bool:
        return conn_id in self._sockets

    def connection_count(self) -> int:
        return len(self._sockets)

    async def to_room(self, room: str, event: Union[str, Enum], payload: Any) -> None:
        """Send an event to every connection currently joined to ``room``."""
        await self._deliver(self.presence.member_ids(room), frame(event, payload))

    async def to_connection(self, conn_id: str, event: Union[str, Enum], payload: Any) -> None:
        """Send an event to exactly one connection (no-op if it is gone)."""
        await self._deliver([conn_id], frame(event, payload))

    async def _deliver(self, conn_ids: Iterable[str], message: Dict[str, Any]) -> None:
        targets = [(cid, self._sockets[cid]) for cid in conn_ids if cid in self._sockets]
        if not targets:
            return

        results = await asyncio.gather(
            *[self._safe_send(socket, message) for _, socket in targets],
            return_exceptions=True
        )

        failed: List[str] = [
            cid for (cid, _), success in zip(targets, results)
            if success is not True
        ]
        for cid in failed:
            self.unregister(cid)
            logger.debug("Dropped dead connection %s", cid)

    async def _safe_send(self, socket: JsonSocket, message: Dict[str, Any]) -> bool:
        """Send a message to a socket with error handling.

        Returns:
            True if successful, False if the connection failed.
        """
        try:
            await socket.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False
