"""
Pytest configuration and fixtures for Lookout tests.

Provides:
- FakeConnection / FakeConnectionFactory standing in for the websocket
- A fixed clock so status derivation is deterministic
- A machine factory producing server-shaped records
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from lookout.errors import TransportUnavailable
from lookout.models.machine import Machine

NOW = datetime(2026, 3, 14, 12, 0, 0, tzinfo=timezone.utc)


class FakeConnection:
    """In-memory push channel connection."""

    def __init__(self, url: str):
        self.url = url
        self.on_close = None
        self.handlers: Dict[str, List[Any]] = {}
        self.emitted: List[tuple] = []
        self.closed = False
        self._connected = True

    @property
    def connected(self) -> bool:
        return self._connected

    def on(self, event, handler):
        handlers = self.handlers.setdefault(event, [])
        if handler not in handlers:
            handlers.append(handler)

    def off(self, event, handler):
        handlers = self.handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)
            if not handlers:
                del self.handlers[event]

    def emit(self, event, payload=None):
        if not self._connected:
            raise TransportUnavailable(f"Cannot emit {event}: connection closed")
        self.emitted.append((event, payload))

    async def close(self):
        self._connected = False
        self.closed = True

    def deliver(self, event, payload=None):
        """Simulate a server frame."""
        for handler in list(self.handlers.get(event, [])):
            handler(payload)

    def drop(self, reason="server went away"):
        """Simulate an unexpected disconnect."""
        self._connected = False
        if self.on_close:
            self.on_close(reason)


class FakeConnectionFactory:
    """Connection factory that records every connection it opens."""

    def __init__(self):
        self.connections: List[FakeConnection] = []
        self.failures = 0

    @property
    def latest(self) -> Optional[FakeConnection]:
        return self.connections[-1] if self.connections else None

    async def __call__(self, url: str) -> FakeConnection:
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionRefusedError(f"refused: {url}")
        conn = FakeConnection(url)
        self.connections.append(conn)
        return conn


class FixedClock:
    """Settable clock."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def connection_factory():
    return FakeConnectionFactory()


@pytest.fixture
def clock():
    return FixedClock()


def make_machine(
    machine_id: str,
    status: str = "active",
    seconds_ago: Optional[float] = 5,
    is_online: bool = True,
    **fields,
) -> Machine:
    """Build a machine the way the server serializes it."""
    data = {
        "id": machine_id,
        "name": fields.pop("name", machine_id),
        "hostname": fields.pop("hostname", f"{machine_id}.local"),
        "status": status,
        "isOnline": is_online,
        "lastSeen": (NOW - timedelta(seconds=seconds_ago)).isoformat() if seconds_ago is not None else None,
    }
    data.update(fields)
    return Machine.model_validate(data)


@pytest.fixture
def machine_factory():
    return make_machine
