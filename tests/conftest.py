"""Shared test fixtures."""
import sys
import os
import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import websockets  # noqa: E402

# Well-known throwaway key (never funded)
TEST_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"


class FakeSocket:
    """Stands in for a websockets client connection: yields queued frames,
    records sent messages."""

    def __init__(self, frames=()):
        self.frames = list(frames)
        self.sent = []
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.closed = True
        return False

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for frame in self.frames:
            if self.closed:
                return
            yield frame

    async def send(self, message):
        self.sent.append(message)

    async def close(self):
        self.closed = True


class FakeConnector:
    """Replacement for ``websockets.connect``; hands out queued sockets."""

    def __init__(self):
        self.sockets = []
        self.calls = []
        self._queue = []

    def queue(self, *frames) -> FakeSocket:
        sock = FakeSocket(frames)
        self._queue.append(sock)
        return sock

    def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        sock = self._queue.pop(0) if self._queue else FakeSocket()
        self.sockets.append(sock)
        return sock


@pytest.fixture
def fake_ws(monkeypatch):
    connector = FakeConnector()
    monkeypatch.setattr(websockets, "connect", connector)
    return connector


@pytest.fixture(autouse=True)
def _no_exchange_env(monkeypatch):
    for var in ("EXCHANGE", "TRADE_EXCHANGE"):
        monkeypatch.delenv(var, raising=False)
