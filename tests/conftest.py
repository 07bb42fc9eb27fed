"""Shared fixtures: mocked tab connections and an event recorder."""

from unittest.mock import AsyncMock

import pytest

from webscan.cdp.connection import CDPConnection
from webscan.events import EventEmitter


class EventRecorder:
    """Collects every emitted ``(event_name, payload)`` in order."""

    def __init__(self, emitter: EventEmitter):
        self.events = []
        emitter.on_any(self.record)

    def record(self, event_name, payload):
        self.events.append((event_name, payload))

    @property
    def names(self):
        return [name for name, _ in self.events]

    def payloads(self, event_name):
        return [payload for name, payload in self.events if name == event_name]


@pytest.fixture
def mock_connection():
    """CDPConnection double whose commands answer with an empty result."""
    conn = AsyncMock(spec=CDPConnection)
    conn.execute_command.return_value = {}
    return conn


@pytest.fixture
def emitter():
    return EventEmitter()


@pytest.fixture
def recorder(emitter):
    return EventRecorder(emitter)
