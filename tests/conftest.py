"""Shared fixtures for the emergency hub test suite."""

import asyncio
import json

import pytest

from emergency_hub.broadcast.registry import ConnectionRegistry
from emergency_hub.broadcast.replay_buffer import ReplayBuffer
from emergency_hub.utils.config import HubConfig


class FakeTransport:
    """In-memory stand-in for a client WebSocket connection."""

    def __init__(self, fail_send: bool = False, fail_ping: bool = False,
                 delay: float = 0.0):
        self.sent = []
        self.delay = delay
        self.open = True
        self.fail_send = fail_send
        self.fail_ping = fail_ping
        self.pings = 0
        self.pong_waiters = []
        self.closed_with = None
        self.terminated = False

    @property
    def is_open(self) -> bool:
        return self.open

    async def send(self, text):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_send:
            raise ConnectionResetError("broken pipe")
        self.sent.append(text)

    async def ping(self):
        if self.fail_ping:
            raise ConnectionResetError("broken pipe")
        self.pings += 1
        waiter = asyncio.get_running_loop().create_future()
        self.pong_waiters.append(waiter)
        return waiter

    async def close(self, code=1000, reason=""):
        self.closed_with = (code, reason)
        self.open = False

    def terminate(self):
        self.terminated = True
        self.open = False

    def messages(self):
        return [json.loads(text) for text in self.sent]


@pytest.fixture
def tmp_config(tmp_path):
    """Provide a temporary config file path."""
    return tmp_path / "settings.json"


@pytest.fixture
def hub_config(tmp_config):
    """HubConfig isolated from the user's settings file and environment."""
    return HubConfig(config_path=tmp_config, environ={})


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def replay_buffer():
    return ReplayBuffer(max_queue_size=10)


@pytest.fixture
def make_transport():
    return FakeTransport


@pytest.fixture
def sample_emergency():
    """Emergency alert body as posted by the request routes."""
    return {
        "patientName": "Test Patient",
        "bloodGroup": "O+",
        "requiredUnits": 2,
        "urgency": "Critical",
        "hospitalName": "Test Hospital",
        "location": "Test City",
        "hospitalPhone": "+91-9999999999",
        "hoursLeft": 6,
        "additionalNotes": "This is a test emergency alert",
    }


@pytest.fixture
def sample_weather():
    """Weather alert as produced by the weather poller."""
    return {
        "location": {"name": "Test City", "lat": 19.0760, "lng": 72.8777},
        "weather": {"description": "heavy rain", "type": "Rain"},
        "severity": "HIGH",
        "message": "Heavy rain may affect blood drives",
    }
