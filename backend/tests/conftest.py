"""Shared test fixtures and configuration for backend tests."""
import itertools
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from helpdesk.config import AppConfig
from helpdesk.main import create_app
from helpdesk.realtime.hub import ConnectionHub
from helpdesk.realtime.router import EventRouter
from helpdesk.storage import PersistenceGateway


class FakeClock:
    """Deterministic clock. Each call returns the current time, then advances it."""

    def __init__(self, start: Optional[datetime] = None, step: timedelta = timedelta(seconds=1)):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0)
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current


class FakeSocket:
    """Records frames the hub sends; stands in for a FastAPI WebSocket."""

    def __init__(self, fail: bool = False):
        self.frames: List[Dict[str, Any]] = []
        self.fail = fail
        self.closed_code: Optional[int] = None

    async def send_json(self, frame: Dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("socket is gone")
        self.frames.append(frame)

    async def close(self, code: int = 1000) -> None:
        self.closed_code = code

    def events(self, name: str) -> List[Any]:
        return [frame["data"] for frame in self.frames if frame["event"] == name]

    def last(self, name: str) -> Any:
        found = self.events(name)
        assert found, f"no '{name}' event among {self.names()}"
        return found[-1]

    def names(self) -> List[str]:
        return [frame["event"] for frame in self.frames]

    def clear(self) -> None:
        self.frames.clear()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway(clock):
    """In-memory persistence gateway driven by the fake clock."""
    store = PersistenceGateway(":memory:", clock=clock)
    yield store
    store.close()


@pytest.fixture
def hub():
    return ConnectionHub()


@pytest.fixture
def event_router(gateway, hub):
    return EventRouter(gateway, hub, bridge=None, config=AppConfig())


@pytest.fixture
def api_client():
    """Provide a TestClient for an app backed by an in-memory database.

    Entering the client runs the lifespan, which wires the event router.
    """
    store = PersistenceGateway(":memory:")
    app = create_app(config=AppConfig(), gateway=store)
    with TestClient(app) as client:
        yield client
    store.close()


@pytest.fixture
def connect(event_router, hub):
    """Attach a fake socket and authenticate it.

    Returns a coroutine function ``connect(user_id, role, name)`` that yields
    ``(connection_id, socket)``.
    """
    counter = itertools.count(1)

    async def _connect(user_id: int, role: str, name: str = ""):
        connection_id = f"conn-{next(counter)}"
        socket = FakeSocket()
        hub.attach(connection_id, socket)
        await event_router.dispatch(
            connection_id, "authenticate", {"userId": user_id, "role": role, "name": name}
        )
        return connection_id, socket

    return _connect
