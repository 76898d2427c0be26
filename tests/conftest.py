import asyncio

import pytest

from pykramer.listener import MatrixListener


class FakeConnection:
    """Stands in for MatrixConnection, recording every payload sent."""

    def __init__(self):
        self.sent: list[bytes] = []
        self.accept = True
        self.closed = False

    def send(self, payload: bytes) -> bool:
        if not self.accept:
            return False
        self.sent.append(payload)
        return True

    async def async_connect(self):
        pass

    def close(self):
        self.closed = True


class RecordingListener(MatrixListener):
    """Keeps every matrix event for inspection."""

    def __init__(self):
        self.events = []
        self.capabilities = []
        self.rebuilds = []
        self.errors = []
        self.detected = asyncio.Event()
        self.failed = asyncio.Event()

    def connected(self):
        self.events.append("connected")

    def disconnected(self):
        self.events.append("disconnected")

    def route_changed(self, medium, output_id, input_id):
        self.events.append(("route", medium, output_id, input_id))

    def routing_rebuilt(self, input_count, output_count, preset_count):
        self.rebuilds.append((input_count, output_count, preset_count))

    def capabilities_detected(self, counts):
        self.capabilities.append(dict(counts))
        self.detected.set()

    def error(self, error_message):
        self.errors.append(error_message)
        self.failed.set()


@pytest.fixture
def fake_connection():
    return FakeConnection()


@pytest.fixture
def recording_listener():
    return RecordingListener()


@pytest.fixture
def settle():
    """Let the transport queue worker run until it is waiting again."""
    async def _settle(seconds: float = 0.01):
        await asyncio.sleep(seconds)
    return _settle
