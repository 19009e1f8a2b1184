"""Shared test fixtures and configuration for backend tests."""
from typing import Any, List, Optional

import pytest
from fastapi.testclient import TestClient

from relay.chat.manager import ConnectionManager, set_manager
from relay.main import app


class FakeSocket:
    """Records frames instead of sending them; optionally fails every send."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: List[Any] = []
        self.fail = fail

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    def types(self) -> List[str]:
        return [frame["type"] for frame in self.sent]

    def of_type(self, event: str) -> List[Any]:
        return [frame["data"] for frame in self.sent if frame["type"] == event]

    def last(self, event: Optional[str] = None) -> Any:
        if event is None:
            return self.sent[-1]
        return self.of_type(event)[-1]

    def clear(self) -> None:
        self.sent.clear()


@pytest.fixture(autouse=True)
def chat_manager():
    """Install a fresh ConnectionManager for every test."""
    manager = ConnectionManager()
    set_manager(manager)
    yield manager
    set_manager(None)


@pytest.fixture
def make_socket():
    """Factory for FakeSocket instances."""
    return FakeSocket


@pytest.fixture
def client():
    """Entered TestClient: lifespan runs and every WebSocket shares one loop."""
    with TestClient(app) as test_client:
        yield test_client
