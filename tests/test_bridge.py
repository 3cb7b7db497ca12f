"""Tests for the bridge loop using in-memory broker sessions."""

import asyncio

import pytest

from gbridge_bridge.adapters import (
    BrokerConnectionError,
    InboundMessage,
    PublishError,
    StreamClosed,
    SubscribeError,
)
from gbridge_bridge.bridge import BridgeLoop, BridgeState, PayloadDecodeError, decode_payload
from gbridge_bridge.health import HealthReporter
from gbridge_bridge.instrumentation import BridgeMetrics

ON = "FFFFFFFF0001"
OFF = "FFFFFFFF0010"


@pytest.fixture
def make_bridge(bridge_config, source_session, target_session, error_reporter):
    def _make(**overrides):
        metrics = BridgeMetrics()
        health = HealthReporter()
        bridge = BridgeLoop(
            bridge_config(**overrides),
            source=source_session,
            target=target_session,
            metrics=metrics,
            error_reporter=error_reporter,
            health=health,
        )
        return bridge, metrics, health

    return _make


async def _until(predicate, timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


def _sample(metrics: BridgeMetrics, name: str, labels=None) -> float:
    return metrics.registry.get_sample_value(name, labels or {}) or 0.0


@pytest.mark.asyncio
async def test_relays_switch_signals_to_target(make_bridge, source_session, target_session):
    bridge, metrics, _ = make_bridge()

    source_session.inject("home/living/d2777/set", b"1")
    source_session.inject("home/living/d2777/set", b"0")
    source_session.inject("home/living/unknown/set", b"1")
    source_session.close_stream()

    with pytest.raises(StreamClosed):
        await bridge.run()

    assert source_session.subscribed == [("home/#", 1)]
    assert target_session.published == [
        ("rf/tristate", ON, 1, False),
        ("rf/tristate", OFF, 1, False),
    ]
    assert _sample(metrics, "publish_count_total") == 2.0
    assert _sample(metrics, "inbound_messages_total") == 3.0
    assert _sample(metrics, "unmatched_messages_total") == 1.0
    assert bridge.state == BridgeState.CLOSED
    assert bridge.exit_state == BridgeState.RELAYING
    assert source_session.closed and target_session.closed


@pytest.mark.asyncio
async def test_stop_returns_normally(make_bridge, source_session, target_session):
    bridge, _, health = make_bridge()
    task = asyncio.create_task(bridge.run())

    await _until(lambda: bridge.state == BridgeState.RELAYING)
    snapshot = health.snapshot()
    assert snapshot["status"] == "ok"
    assert snapshot["bridgeState"]["state"] == "relaying"

    source_session.inject("home/living/d2756/set", b"1")
    await _until(lambda: len(target_session.published) == 1)

    bridge.stop()
    await asyncio.wait_for(task, timeout=2.0)

    assert target_session.published == [("rf/tristate", "FFF0FFFF0101", 1, False)]
    snapshot = health.snapshot()
    assert snapshot["status"] == "degraded"
    assert snapshot["bridgeState"]["state"] == "closed"
    assert snapshot["lastRelayAt"] is not None
    assert snapshot["sessions"]["target"] == {
        "connected": False,
        "detail": "closed",
        "since": snapshot["sessions"]["target"]["since"],
    }


@pytest.mark.asyncio
async def test_undecodable_payload_is_skipped(make_bridge, source_session, target_session, error_reporter):
    bridge, metrics, _ = make_bridge()

    source_session.inject("home/living/d2777/set", b"\xff\xfe")
    source_session.inject("home/living/d2777/set", b"1")
    source_session.close_stream()

    with pytest.raises(StreamClosed):
        await bridge.run()

    assert target_session.published == [("rf/tristate", ON, 1, False)]
    assert _sample(metrics, "message_errors_total", {"kind": "decode"}) == 1.0
    exc, context = error_reporter.captured[0]
    assert isinstance(exc, PayloadDecodeError)
    assert context == {"topic": "home/living/d2777/set"}


@pytest.mark.asyncio
async def test_publish_is_retried(make_bridge, source_session, target_session):
    bridge, metrics, _ = make_bridge()
    target_session.publish_failures = 2

    source_session.inject("home/living/d2777/set", b"1")
    source_session.close_stream()

    with pytest.raises(StreamClosed):
        await bridge.run()

    assert target_session.published == [("rf/tristate", ON, 1, False)]
    assert _sample(metrics, "message_errors_total", {"kind": "publish"}) == 0.0


@pytest.mark.asyncio
async def test_publish_failure_does_not_stop_relay(make_bridge, source_session, target_session, error_reporter):
    bridge, metrics, _ = make_bridge(ordered_delivery=True)
    target_session.publish_failures = 3

    source_session.inject("home/living/d2777/set", b"1")
    source_session.inject("home/living/d2777/set", b"0")
    source_session.close_stream()

    with pytest.raises(StreamClosed):
        await bridge.run()

    assert target_session.published == [("rf/tristate", OFF, 1, False)]
    assert _sample(metrics, "message_errors_total", {"kind": "publish"}) == 1.0
    assert _sample(metrics, "publish_count_total") == 1.0
    exc, context = error_reporter.captured[0]
    assert isinstance(exc, PublishError)
    assert context == {"topic": "home/living/d2777/set", "command": ON}


@pytest.mark.asyncio
async def test_unexpected_handler_error_is_isolated(make_bridge, source_session, target_session, error_reporter):
    bridge, metrics, _ = make_bridge()
    original_publish = target_session.publish
    calls = {"count": 0}

    def publish(topic, payload, qos=1, retain=False):
        calls["count"] += 1
        if calls["count"] == 1:
            raise RuntimeError("boom")
        original_publish(topic, payload, qos=qos, retain=retain)

    target_session.publish = publish

    source_session.inject("home/living/d2777/set", b"1")
    source_session.inject("home/living/d2777/set", b"0")
    source_session.close_stream()

    with pytest.raises(StreamClosed):
        await bridge.run()

    assert target_session.published == [("rf/tristate", OFF, 1, False)]
    assert _sample(metrics, "message_errors_total", {"kind": "unexpected"}) == 1.0
    assert isinstance(error_reporter.captured[0][0], RuntimeError)


@pytest.mark.asyncio
async def test_ordered_delivery_preserves_order(make_bridge, source_session, target_session):
    bridge, _, _ = make_bridge(ordered_delivery=True)
    payloads = [b"1", b"0", b"0", b"1", b"0"]

    for payload in payloads:
        source_session.inject("gBridge/u1/d2777/onoff", payload)
    source_session.close_stream()

    with pytest.raises(StreamClosed):
        await bridge.run()

    assert [item[1] for item in target_session.published] == [
        ON if payload == b"1" else OFF for payload in payloads
    ]


@pytest.mark.asyncio
async def test_connect_failure_aborts_startup(make_bridge, source_session, target_session, connect_failure):
    bridge, _, _ = make_bridge()
    source_session.connect_error = connect_failure

    with pytest.raises(BrokerConnectionError):
        await bridge.run()

    assert bridge.exit_state == BridgeState.CONNECTING
    assert bridge.state == BridgeState.CLOSED
    assert source_session.subscribed == []
    assert target_session.closed


@pytest.mark.asyncio
async def test_subscribe_failure_aborts_startup(make_bridge, source_session):
    bridge, _, _ = make_bridge()
    source_session.subscribe_error = SubscribeError("refused")

    with pytest.raises(SubscribeError):
        await bridge.run()

    assert bridge.exit_state == BridgeState.CONNECTING


@pytest.mark.asyncio
async def test_source_reconnect_restores_subscriptions(make_bridge, source_session, target_session):
    bridge, metrics, health = make_bridge()
    task = asyncio.create_task(bridge.run())

    await _until(lambda: bridge.state == BridgeState.RELAYING)
    source_session.drop()
    await _until(lambda: source_session.restore_calls == 1)

    source_session.inject("home/living/d2777/set", b"1")
    await _until(lambda: len(target_session.published) == 1)

    bridge.stop()
    await asyncio.wait_for(task, timeout=2.0)

    assert source_session.connect_calls == 2
    assert _sample(metrics, "reconnects_total", {"role": "source"}) == 1.0


@pytest.mark.asyncio
async def test_exhausted_reconnect_fails_the_bridge(make_bridge, source_session, connect_failure):
    bridge, _, health = make_bridge()
    task = asyncio.create_task(bridge.run())

    await _until(lambda: bridge.state == BridgeState.RELAYING)
    source_session.connect_error = connect_failure
    source_session.drop()

    with pytest.raises(BrokerConnectionError, match="source broker"):
        await asyncio.wait_for(task, timeout=2.0)

    # one initial connect plus two reconnect attempts
    assert source_session.connect_calls == 3
    snapshot = health.snapshot()
    assert snapshot["sessions"]["source"]["connected"] is False
    assert snapshot["sessions"]["source"]["detail"] == "reconnect attempts exhausted"


@pytest.mark.asyncio
async def test_handle_message_returns_command(make_bridge, target_session):
    bridge, _, _ = make_bridge()

    command = await bridge.handle_message(InboundMessage("home/living/d2777/set", b"0"))
    skipped = await bridge.handle_message(InboundMessage("home/d2777", b"0"))

    assert command == OFF
    assert skipped is None
    assert target_session.published == [("rf/tristate", OFF, 1, False)]


def test_bridge_builds_switch_table(make_bridge):
    bridge, _, _ = make_bridge()

    assert sorted(bridge.switches) == ["d2756", "d2777"]


def test_decode_payload():
    assert decode_payload(InboundMessage("a/b/c", "ü".encode())) == "ü"

    with pytest.raises(PayloadDecodeError, match="a/b/c"):
        decode_payload(InboundMessage("a/b/c", b"\x80"))
