"""Bridge loop relaying source switch signals to the target broker."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Optional, Set

from . import constants
from .adapters.mqtt import (
    BrokerConnectionError,
    BrokerSession,
    InboundMessage,
    PublishError,
    SessionRole,
    StreamClosed,
)
from .config import BridgeConfig
from .connection import ConnectionCoordinator, ReconnectReason
from .health import HealthReporter
from .instrumentation import BridgeMetrics, ErrorReporter
from .switches import SwitchTable, prepare_switch_configs, zap_tristate

LOGGER = logging.getLogger(__name__)

SHUTDOWN_GRACE_SECONDS = 5.0


class BridgeState(str, Enum):
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    RELAYING = "relaying"
    CLOSED = "closed"


class PayloadDecodeError(ValueError):
    """Raised when an inbound payload is not UTF-8 text."""


def decode_payload(message: InboundMessage) -> str:
    try:
        return message.payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise PayloadDecodeError(
            f"Payload on {message.topic!r} is not valid UTF-8"
        ) from exc


class BridgeLoop:
    """Connects both brokers and relays translated switch commands.

    State moves CONNECTING -> SUBSCRIBED -> RELAYING -> CLOSED. A single bad
    message never stops the loop: decode and publish failures are counted,
    reported and skipped. The loop ends when the source stream closes, which
    happens on :meth:`stop` or when a broker connection is lost for good.
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        source: BrokerSession,
        target: BrokerSession,
        switches: Optional[SwitchTable] = None,
        metrics: Optional[BridgeMetrics] = None,
        error_reporter: Optional[ErrorReporter] = None,
        health: Optional[HealthReporter] = None,
    ) -> None:
        self._config = config
        self._source = source
        self._target = target
        self._switches = (
            switches if switches is not None else prepare_switch_configs(config.switches)
        )
        self._metrics = metrics or BridgeMetrics()
        self._errors = error_reporter or ErrorReporter(None)
        self._health = health or HealthReporter()

        self._source_coordinator = ConnectionCoordinator(
            session=source,
            resilience_config=config.resilience,
            metrics=self._metrics,
        )
        self._target_coordinator = ConnectionCoordinator(
            session=target,
            resilience_config=config.resilience,
            metrics=self._metrics,
        )
        self._wire_coordinators()

        self._state = BridgeState.CONNECTING
        self._handlers: Set[asyncio.Task[None]] = set()
        self._inflight = asyncio.Semaphore(config.max_inflight_messages)
        self._stopping = False
        self._failure: Optional[BaseException] = None
        self._exit_state: Optional[BridgeState] = None

    @property
    def state(self) -> BridgeState:
        return self._state

    @property
    def exit_state(self) -> Optional[BridgeState]:
        """The state the bridge was in when :meth:`run` began shutting down."""
        return self._exit_state

    @property
    def switches(self) -> SwitchTable:
        return self._switches

    @property
    def metrics(self) -> BridgeMetrics:
        return self._metrics

    async def run(self) -> None:
        """Connect, subscribe and relay until the source stream ends.

        Raises:
            BrokerConnectionError: A broker could not be reached at startup,
                or a lost connection could not be restored.
            SubscribeError: The source broker refused the subscription.
            StreamClosed: The source stream ended without :meth:`stop`.
        """
        try:
            await self._connect()
            await self._subscribe()
            self._source_coordinator.start_supervisor()
            self._target_coordinator.start_supervisor()
            await self._transition(BridgeState.RELAYING)

            await self._relay()

            if self._failure is not None:
                raise self._failure
            if not self._stopping:
                raise StreamClosed("source broker event stream ended")
        finally:
            await self._shutdown()

    def stop(self) -> None:
        """Request a graceful stop; :meth:`run` then returns normally."""

        if self._stopping:
            return
        LOGGER.info("Stopping bridge")
        self._stopping = True
        self._source.close_stream()

    async def handle_message(self, message: InboundMessage) -> Optional[str]:
        """Decode, translate and relay one inbound message.

        Returns the command published to the target broker, or None when the
        message was skipped.
        """
        try:
            payload = decode_payload(message)
        except PayloadDecodeError as exc:
            LOGGER.warning("Dropping message: %s", exc)
            self._metrics.record_error("decode")
            await self._errors.capture(exc, context={"topic": message.topic})
            return None

        command = zap_tristate(message.topic, payload, self._switches)
        if command is None:
            LOGGER.debug("No command for %s = %r", message.topic, payload)
            self._metrics.record_unmatched()
            return None

        try:
            await self._publish_with_retry(command)
        except PublishError as exc:
            LOGGER.error("Failed to relay %s = %r: %s", message.topic, payload, exc)
            self._metrics.record_error("publish")
            await self._errors.capture(
                exc, context={"topic": message.topic, "command": command}
            )
            return None

        self._metrics.record_publish()
        self._health.record_relay()
        LOGGER.info(
            "Relayed %s = %r as %s to %s",
            message.topic,
            payload,
            command,
            self._config.target_topic,
        )
        return command

    async def _connect(self) -> None:
        LOGGER.info("Bridge connecting to source and target brokers")
        self._health.set_bridge_state(BridgeState.CONNECTING.value, relaying=False)
        for role in SessionRole:
            self._health.mark_disconnected(role, "connecting")

        results = await asyncio.gather(
            self._source_coordinator.connect(),
            self._target_coordinator.connect(),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

        self._health.mark_connected(SessionRole.SOURCE)
        self._health.mark_connected(SessionRole.TARGET)

    async def _subscribe(self) -> None:
        await self._source.subscribe(
            self._config.source_topic_filter,
            qos=constants.DEFAULT_QOS,
            timeout=self._config.resilience.subscribe_timeout_seconds,
        )
        await self._transition(BridgeState.SUBSCRIBED)

    async def _relay(self) -> None:
        async for event in self._source.events():
            if not isinstance(event, InboundMessage):
                LOGGER.debug("Source %s: %s", event.kind, event.detail)
                continue

            self._metrics.record_inbound()
            if self._config.ordered_delivery:
                await self._handle_safely(event)
                continue

            await self._inflight.acquire()
            task = asyncio.create_task(self._handle_safely(event))
            self._handlers.add(task)
            task.add_done_callback(self._handler_done)

        LOGGER.info("Source event stream ended")

    def _handler_done(self, task: asyncio.Task[None]) -> None:
        self._handlers.discard(task)
        self._inflight.release()

    async def _handle_safely(self, message: InboundMessage) -> None:
        try:
            await self.handle_message(message)
        except Exception as exc:
            LOGGER.exception("Unexpected error relaying message on %s", message.topic)
            self._metrics.record_error("unexpected")
            await self._errors.capture(exc, context={"topic": message.topic})

    async def _publish_with_retry(self, command: str) -> None:
        resilience = self._config.resilience
        delay = resilience.publish_retry_delay_seconds
        attempts = resilience.publish_retry_attempts

        for attempt in range(1, attempts + 1):
            try:
                self._target.publish(
                    self._config.target_topic,
                    command,
                    qos=constants.DEFAULT_QOS,
                    retain=False,
                )
                return
            except PublishError as exc:
                if attempt >= attempts:
                    raise
                LOGGER.warning(
                    "Publish attempt %d failed: %s, retrying in %.1fs",
                    attempt,
                    exc,
                    delay,
                )
            await asyncio.sleep(delay)
            delay *= 2

    def _wire_coordinators(self) -> None:
        source = self._source_coordinator
        target = self._target_coordinator

        async def _source_lost(reason: ReconnectReason) -> None:
            self._health.mark_disconnected(
                SessionRole.SOURCE, f"reconnecting ({reason.value})"
            )

        async def _target_lost(reason: ReconnectReason) -> None:
            self._health.mark_disconnected(
                SessionRole.TARGET, f"reconnecting ({reason.value})"
            )

        async def _source_restored() -> None:
            await self._source.restore_subscriptions(
                timeout=self._config.resilience.subscribe_timeout_seconds
            )
            self._health.mark_connected(SessionRole.SOURCE)

        async def _target_restored() -> None:
            self._health.mark_connected(SessionRole.TARGET)

        async def _source_exhausted() -> None:
            self._health.mark_disconnected(
                SessionRole.SOURCE, "reconnect attempts exhausted"
            )
            self._fail(BrokerConnectionError("lost connection to the source broker"))

        async def _target_exhausted() -> None:
            self._health.mark_disconnected(
                SessionRole.TARGET, "reconnect attempts exhausted"
            )
            self._fail(BrokerConnectionError("lost connection to the target broker"))

        source.register_disconnected_callback(_source_lost)
        source.register_reconnected_callback(_source_restored)
        source.register_exhausted_callback(_source_exhausted)
        target.register_disconnected_callback(_target_lost)
        target.register_reconnected_callback(_target_restored)
        target.register_exhausted_callback(_target_exhausted)

    def _fail(self, exc: BaseException) -> None:
        if self._failure is None:
            self._failure = exc
        self._source.close_stream()

    async def _transition(self, state: BridgeState) -> None:
        if state == self._state:
            return
        previous = self._state
        self._state = state
        LOGGER.info("Bridge state transition %s -> %s", previous.value, state.value)
        self._health.set_bridge_state(
            state.value, relaying=state == BridgeState.RELAYING
        )

    async def _shutdown(self) -> None:
        self._exit_state = self._state
        await self._transition(BridgeState.CLOSED)

        await self._source_coordinator.stop_supervisor()
        await self._target_coordinator.stop_supervisor()

        handlers = list(self._handlers)
        if handlers:
            _, pending = await asyncio.wait(handlers, timeout=SHUTDOWN_GRACE_SECONDS)
            for task in pending:
                task.cancel()
            if pending:
                LOGGER.warning("Cancelled %d in-flight messages", len(pending))
                await asyncio.gather(*pending, return_exceptions=True)

        await self._source_coordinator.disconnect()
        await self._target_coordinator.disconnect()
        self._health.mark_closed()
