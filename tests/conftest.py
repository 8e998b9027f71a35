"""Shared fixtures: an in-memory stand-in for a websockets server connection."""

import asyncio
import json

import pytest
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK


class FakeWebSocket:
    """Async-iterable fake with the subset of ServerConnection the gateway uses."""

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list[str] = []
        self.close_calls: list[tuple[int, str]] = []
        self.closed = False
        self.remote_address = ("127.0.0.1", 50000)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    async def send(self, data: str) -> None:
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.close_calls.append((code, reason))
        self.closed = True
        self.incoming.put_nowait(None)

    # Test helpers

    def feed(self, message) -> None:
        """Queue an inbound frame (dict frames are JSON-encoded)."""
        if isinstance(message, dict):
            message = json.dumps(message)
        self.incoming.put_nowait(message)

    def hang_up(self) -> None:
        """Peer closes cleanly."""
        self.closed = True
        self.incoming.put_nowait(None)

    def drop(self) -> None:
        """Connection fails abnormally."""
        self.closed = True
        self.incoming.put_nowait(ConnectionClosedError(None, None))

    def messages(self) -> list[dict]:
        return [json.loads(m) for m in self.sent]


@pytest.fixture
def make_ws():
    """Factory for FakeWebSocket instances."""
    return FakeWebSocket
