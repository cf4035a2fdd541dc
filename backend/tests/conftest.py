"""Shared test fixtures and configuration for backend tests."""
import asyncio
from typing import List

import pytest
from fastapi.testclient import TestClient

from mingle.auth.service import IdentityService
from mingle.chat.broker import Broker
from mingle.chat.store import MessageStore
from mingle.config import AppConfig, ChatSettings
from mingle.main import create_app

PARTICIPANTS = ("alice", "bob", "carol")


class FakeClock:
    """Manually advanced time source for the store and identity service."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWebSocket:
    """In-process stand-in for a FastAPI WebSocket.

    Frames pushed with ``push`` are returned by ``receive_text``; pushing an
    exception makes ``receive_text`` raise it. Sent events are recorded.
    """

    def __init__(self, fail_sends: bool = False, send_delay: float = 0) -> None:
        self.accepted = False
        self.closed_code = None
        self.fail_sends = fail_sends
        self.send_delay = send_delay
        self.sent: List[dict] = []
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, data: dict) -> None:
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.fail_sends:
            raise RuntimeError("transport is gone")
        self.sent.append(data)

    async def receive_text(self) -> str:
        item = await self._incoming.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self, code: int = 1000) -> None:
        self.closed_code = code

    def push(self, item) -> None:
        self._incoming.put_nowait(item)

    def of_type(self, event_type: str) -> List[dict]:
        return [event for event in self.sent if event["type"] == event_type]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    """In-memory MessageStore driven by the fake clock."""
    store = MessageStore(":memory:", clock=clock)
    yield store
    store.close()


@pytest.fixture
def identity(clock):
    service = IdentityService(":memory:", clock=clock)
    yield service
    service.close()


@pytest.fixture
def tokens(identity):
    """One valid session token per test participant."""
    return {pid: identity.issue(pid) for pid in PARTICIPANTS}


@pytest.fixture
def chat_settings():
    return ChatSettings(
        max_message_length=200,
        history_page_size=50,
        handshake_timeout_seconds=1.0,
        idle_timeout_seconds=0,
        send_timeout_seconds=2.0,
    )


@pytest.fixture
def broker(store, identity, chat_settings):
    return Broker(store, identity, chat_settings)


@pytest.fixture
def api_client(broker):
    """TestClient over an app wired to the in-memory broker.

    Used as a context manager so every request and WebSocket session runs on
    the same event loop.
    """
    app = create_app(config=AppConfig(chat=broker.settings), broker=broker)
    with TestClient(app) as client:
        yield client


def auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}
