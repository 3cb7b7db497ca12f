import asyncio
from dataclasses import replace
from typing import Optional

import pytest

from gbridge_bridge.adapters import (
    BrokerConnectionError,
    InboundMessage,
    PublishError,
    SessionRole,
)
from gbridge_bridge.config import (
    BridgeConfig,
    ConnectionConfig,
    ResilienceConfig,
    SwitchConfig,
)

SAMPLE_CONFIG = """
[source]
host = mqtt.gbridge.io
user = gbridge-u1
password = source-secret

[target]
host = io.adafruit.com:8884
user = ada
password = target-secret
client_id = zap-target

[bridge]
source_topic_prefix = gBridge/u1/
target_topic = ada/feeds/rf-tristate

[switch d2756]
on = FFF0FFFF0101
off = FFF0FFFF0110

[switch d2777]
on = FFFFFFFF0001
off = FFFFFFFF0010
"""


class FakeBrokerSession:
    """In-memory stand-in for BrokerSession used by bridge and app tests."""

    def __init__(self, role: SessionRole) -> None:
        self.role = role
        self.connect_error: Optional[BaseException] = None
        self.subscribe_error: Optional[BaseException] = None
        self.publish_failures = 0
        self.connect_calls = 0
        self.restore_calls = 0
        self.closed = False
        self.subscribed: list[tuple[str, int]] = []
        self.published: list[tuple[str, str, int, bool]] = []
        self._queue: asyncio.Queue = asyncio.Queue()
        self._stream_closed = False
        self._disconnect_handlers: list = []

    def register_disconnect_handler(self, handler) -> None:
        self._disconnect_handlers.append(handler)

    def drop(self, rc: int = 7) -> None:
        for handler in self._disconnect_handlers:
            handler(rc)

    async def connect(self, timeout: float = 30.0) -> None:
        self.connect_calls += 1
        if self.connect_error is not None:
            raise self.connect_error

    async def disconnect(self) -> None:
        return None

    async def close(self) -> None:
        self.closed = True
        self.close_stream()

    async def subscribe(self, topic_filter: str, qos: int = 1, timeout: float = 10.0) -> None:
        if self.subscribe_error is not None:
            raise self.subscribe_error
        self.subscribed.append((topic_filter, qos))

    async def restore_subscriptions(self, timeout: float = 10.0) -> None:
        self.restore_calls += 1

    def publish(self, topic: str, payload: str, qos: int = 1, retain: bool = False) -> None:
        if self.publish_failures > 0:
            self.publish_failures -= 1
            raise PublishError("simulated publish failure")
        self.published.append((topic, payload, qos, retain))

    def inject(self, topic: str, payload: bytes) -> None:
        self._queue.put_nowait(InboundMessage(topic, payload))

    async def events(self):
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    def close_stream(self) -> None:
        if self._stream_closed:
            return
        self._stream_closed = True
        self._queue.put_nowait(None)


class RecordingErrorReporter:
    def __init__(self) -> None:
        self.captured: list[tuple[BaseException, dict]] = []
        self.closed = False

    async def capture(self, exc, *, context=None) -> bool:
        self.captured.append((exc, dict(context or {})))
        return True

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def source_session() -> FakeBrokerSession:
    return FakeBrokerSession(SessionRole.SOURCE)


@pytest.fixture
def target_session() -> FakeBrokerSession:
    return FakeBrokerSession(SessionRole.TARGET)


@pytest.fixture
def error_reporter() -> RecordingErrorReporter:
    return RecordingErrorReporter()


@pytest.fixture
def connect_failure() -> BrokerConnectionError:
    return BrokerConnectionError("simulated connection failure")


@pytest.fixture
def bridge_config():
    """Build a BridgeConfig with fast retry timings; keyword overrides apply."""

    def _build(**overrides) -> BridgeConfig:
        config = BridgeConfig(
            source=ConnectionConfig(host="mqtt.gbridge.io", user="gbridge-u1", password="s"),
            target=ConnectionConfig(host="io.adafruit.com", user="ada", password="t"),
            source_topic_prefix="home/",
            target_topic="rf/tristate",
            switches=[
                SwitchConfig(name="d2777", on="FFFFFFFF0001", off="FFFFFFFF0010"),
                SwitchConfig(name="d2756", on="FFF0FFFF0101", off="FFF0FFFF0110"),
            ],
            resilience=ResilienceConfig(
                connect_timeout_seconds=1.0,
                subscribe_timeout_seconds=1.0,
                reconnect_initial_seconds=0.01,
                reconnect_max_seconds=0.02,
                reconnect_jitter_ratio=0.0,
                reconnect_max_attempts=2,
                publish_retry_attempts=3,
                publish_retry_delay_seconds=0.0,
            ),
        )
        return replace(config, **overrides)

    return _build


@pytest.fixture
def sample_config_path(tmp_path):
    path = tmp_path / "gbridge-bridge.cfg"
    path.write_text(SAMPLE_CONFIG, encoding="utf-8")
    return path
