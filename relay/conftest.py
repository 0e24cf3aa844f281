"""
Pytest configuration and shared fixtures.

The test environment is set here, before any relay module is imported,
so the module-level settings, engine and app pick it up.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_relay.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("CONTENT_VARIANT", "structured")
os.environ.setdefault("BROADCAST_URL", "memory://")
os.environ.setdefault("COUNT_SETTLE_DELAY_MS", "10")

import pytest

from relay.config import get_settings
get_settings.cache_clear()

from relay.storage import Base, engine, MessageLog  # noqa: E402


@pytest.fixture
def db_tables():
    """Fresh messages table for each test."""
    from relay.models import Message  # noqa: F401

    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def message_log(db_tables) -> MessageLog:
    return MessageLog()


class FakeSocket:
    """Stand-in for a WebSocket that records every frame sent to it."""

    def __init__(self):
        self.sent = []
        self.closed = False

    async def send_json(self, data):
        if self.closed:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    def events(self, name=None):
        frames = [f for f in self.sent if "event" in f]
        if name is None:
            return frames
        return [f for f in frames if f["event"] == name]

    def acks(self):
        return [f for f in self.sent if "ack" in f]


@pytest.fixture
def fake_socket_factory():
    return FakeSocket
