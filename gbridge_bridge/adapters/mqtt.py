"""MQTT adapter encapsulating paho-mqtt client usage for one broker session."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import ssl
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Optional,
    Tuple,
    Union,
)

import paho.mqtt.client as mqtt

from .. import constants
from ..config import ConnectionConfig

LOGGER = logging.getLogger(__name__)
DIAGNOSTICS_LOGGER = logging.getLogger(f"{__name__}.diagnostics")

DIAGNOSTIC_QUEUE_SIZE = 256


class BrokerError(RuntimeError):
    """Base class for failures talking to a broker."""


class BrokerConnectionError(BrokerError):
    """Raised when a session fails to establish a connection."""


class SubscribeError(BrokerError):
    """Raised when the broker refuses or never acknowledges a subscription."""


class PublishError(BrokerError):
    """Raised when a message cannot be handed to the broker."""


class StreamClosed(BrokerError):
    """Raised when the source event stream ends."""


class SessionRole(str, Enum):
    SOURCE = "source"
    TARGET = "target"


@dataclass(frozen=True, slots=True)
class InboundMessage:
    topic: str
    payload: bytes


@dataclass(frozen=True, slots=True)
class SessionNotice:
    """A non-publish event observed on a session (acks, disconnects, logs)."""

    kind: str
    detail: str = ""


SessionEvent = Union[InboundMessage, SessionNotice]


def build_tls_context(ca_bundle: Optional[str]) -> ssl.SSLContext:
    """Create a client TLS context trusting ``ca_bundle`` (PEM text).

    Falls back to the system trust store when no bundle is given.
    """

    if ca_bundle:
        return ssl.create_default_context(cadata=ca_bundle)
    return ssl.create_default_context()


def _is_failure(code: Any) -> bool:
    is_failure = getattr(code, "is_failure", None)
    if is_failure is not None:
        return bool(is_failure)
    return int(code) >= 0x80


class BrokerSession:
    """Async-friendly wrapper owning one threaded paho-mqtt connection.

    The source session feeds an inbound event stream (see :meth:`events`);
    the target session only publishes. paho's own reconnect logic is never
    relied on: when the connection drops, the network loop is halted and
    registered disconnect handlers decide what happens next.
    """

    def __init__(
        self,
        config: ConnectionConfig,
        *,
        role: SessionRole,
        ca_bundle: Optional[str] = None,
        keep_alive: int = constants.DEFAULT_KEEP_ALIVE,
        use_tls: bool = True,
    ) -> None:
        self.config = config
        self.role = role
        self.ca_bundle = ca_bundle
        self.keep_alive = keep_alive
        self.use_tls = use_tls

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected_event: Optional[asyncio.Event] = None
        self._disconnect_event: Optional[asyncio.Event] = None
        self._last_connect_rc: Any = None
        self._connect_failed = False
        self._connected = False
        self._expected_disconnect = False

        self._inbound: asyncio.Queue[Optional[SessionEvent]] = asyncio.Queue()
        self._stream_closed = False
        self._diagnostics: asyncio.Queue[SessionNotice] = asyncio.Queue(
            maxsize=DIAGNOSTIC_QUEUE_SIZE
        )
        self._diagnostics_task: Optional[asyncio.Task[None]] = None
        self.diagnostics_dropped = 0

        self._pending_subacks: Dict[int, asyncio.Future[List[Any]]] = {}
        self._subscriptions: Dict[str, int] = {}
        self._disconnect_handlers: List[Callable[[Any], None]] = []

    @classmethod
    async def open(
        cls,
        config: ConnectionConfig,
        ca_bundle: Optional[str],
        keep_alive: int,
        role: SessionRole,
        *,
        timeout: float = 30.0,
        use_tls: bool = True,
    ) -> Tuple["BrokerSession", AsyncIterator[SessionEvent]]:
        """Connect a new session and return it with its inbound event stream."""

        session = cls(
            config,
            role=role,
            ca_bundle=ca_bundle,
            keep_alive=keep_alive,
            use_tls=use_tls,
        )
        await session.connect(timeout=timeout)
        return session, session.events()

    @property
    def subscriptions(self) -> Dict[str, int]:
        return dict(self._subscriptions)

    def is_connected(self) -> bool:
        return self._connected

    def register_disconnect_handler(self, handler: Callable[[Any], None]) -> None:
        self._disconnect_handlers.append(handler)

    async def connect(self, timeout: float = 30.0) -> None:
        """Connect to the broker and wait for the CONNACK."""

        self._loop = asyncio.get_running_loop()
        self._connected_event = asyncio.Event()
        self._disconnect_event = asyncio.Event()
        self._last_connect_rc = None
        self._connect_failed = False
        self._expected_disconnect = False

        # Reconnects are driven by ConnectionCoordinator, never by paho's loop.
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.config.client_id,
            reconnect_on_failure=False,
        )
        client.username_pw_set(self.config.user, self.config.password)

        if self.use_tls:
            try:
                client.tls_set_context(build_tls_context(self.ca_bundle))
            except ssl.SSLError as exc:
                raise BrokerConnectionError(
                    f"Invalid CA bundle for {self.role.value} broker: {exc}"
                ) from exc

        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.on_subscribe = self._on_subscribe
        client.on_publish = self._on_publish
        client.on_log = self._on_log

        self._client = client
        self._start_diagnostics()

        LOGGER.info(
            "Connecting to %s broker %s:%s as %s",
            self.role.value,
            self.config.host,
            self.config.port,
            self.config.user,
        )

        client.connect_async(self.config.host, self.config.port, self.keep_alive)
        client.loop_start()

        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
            if self._connect_failed:
                raise BrokerConnectionError(
                    f"Could not reach {self.role.value} broker "
                    f"{self.config.host}:{self.config.port}"
                )
            if self._last_connect_rc is None or self._last_connect_rc != 0:
                raise BrokerConnectionError(
                    f"{self.role.value} broker rejected connection "
                    f"(rc={self._last_connect_rc})"
                )
        except asyncio.TimeoutError as exc:
            await self._teardown()
            raise BrokerConnectionError(
                f"Timed out connecting to {self.role.value} broker"
            ) from exc
        except BrokerConnectionError:
            await self._teardown()
            raise

    async def disconnect(self, timeout: float = 5.0) -> None:
        """Disconnect from the broker and stop the network loop."""

        client = self._client
        if client is None:
            return

        self._expected_disconnect = True
        if self._connected and self._disconnect_event is not None:
            client.disconnect()
            try:
                await asyncio.wait_for(self._disconnect_event.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                LOGGER.warning(
                    "No disconnect acknowledgement from %s broker", self.role.value
                )
        await self._teardown()

    async def close(self) -> None:
        """Disconnect, end the inbound stream, and stop the diagnostic drain."""

        await self.disconnect()
        self.close_stream()
        await self._stop_diagnostics()

    async def subscribe(
        self,
        topic_filter: str,
        qos: int = constants.DEFAULT_QOS,
        timeout: float = 10.0,
    ) -> None:
        """Subscribe and wait for the broker to acknowledge the request."""

        self._require_role(SessionRole.SOURCE, "subscribe")
        if self._client is None:
            raise SubscribeError(f"{self.role.value} broker is not connected")

        loop = asyncio.get_running_loop()
        result, mid = self._client.subscribe(topic_filter, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise SubscribeError(
                f"Subscribe to {topic_filter!r} failed with rc={result}"
            )

        ack: asyncio.Future[List[Any]] = loop.create_future()
        self._pending_subacks[mid] = ack
        try:
            codes = await asyncio.wait_for(ack, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise SubscribeError(
                f"Timed out waiting for SUBACK on {topic_filter!r}"
            ) from exc
        finally:
            self._pending_subacks.pop(mid, None)

        if not codes or any(_is_failure(code) for code in codes):
            raise SubscribeError(
                f"Broker rejected subscription to {topic_filter!r} "
                f"({', '.join(str(code) for code in codes)})"
            )

        self._subscriptions[topic_filter] = qos
        LOGGER.info("Subscribed to %s on %s broker", topic_filter, self.role.value)

    async def restore_subscriptions(self, timeout: float = 10.0) -> None:
        """Re-issue every acknowledged subscription, e.g. after a reconnect."""

        for topic_filter, qos in list(self._subscriptions.items()):
            await self.subscribe(topic_filter, qos=qos, timeout=timeout)

    def publish(
        self,
        topic: str,
        payload: Union[str, bytes],
        qos: int = constants.DEFAULT_QOS,
        retain: bool = False,
    ) -> None:
        self._require_role(SessionRole.TARGET, "publish")
        client = self._client
        if client is None or not self._connected:
            raise PublishError(f"{self.role.value} broker is not connected")

        info = client.publish(topic, payload, qos=qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishError(f"Publish to {topic!r} failed with rc={info.rc}")
        self._emit_diagnostic(
            SessionNotice("publish", f"mid={info.mid} topic={topic} qos={qos}")
        )

    async def events(self) -> AsyncIterator[SessionEvent]:
        """Yield inbound events until the stream is closed."""

        while True:
            event = await self._inbound.get()
            if event is None:
                return
            yield event

    def close_stream(self) -> None:
        if self._stream_closed:
            return
        self._stream_closed = True
        self._inbound.put_nowait(None)

    def _require_role(self, role: SessionRole, operation: str) -> None:
        if self.role is not role:
            raise RuntimeError(
                f"{operation} is only available on the {role.value} session"
            )

    async def _teardown(self) -> None:
        client = self._client
        self._client = None
        self._connected = False
        if client is not None:
            # loop_stop joins paho's network thread
            await asyncio.to_thread(client.loop_stop)

        for ack in self._pending_subacks.values():
            if not ack.done():
                ack.set_exception(
                    SubscribeError(f"{self.role.value} session was torn down")
                )
        self._pending_subacks.clear()

    # ------------------------------------------------------------------
    # Diagnostic drain
    # ------------------------------------------------------------------
    def _start_diagnostics(self) -> None:
        if self._diagnostics_task is not None and not self._diagnostics_task.done():
            return
        self._diagnostics_task = asyncio.create_task(self._drain_diagnostics())

    async def _stop_diagnostics(self) -> None:
        task = self._diagnostics_task
        self._diagnostics_task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _drain_diagnostics(self) -> None:
        while True:
            notice = await self._diagnostics.get()
            DIAGNOSTICS_LOGGER.debug(
                "[%s] %s %s", self.role.value, notice.kind, notice.detail
            )

    def _emit_diagnostic(self, notice: SessionNotice) -> None:
        try:
            self._diagnostics.put_nowait(notice)
        except asyncio.QueueFull:
            self.diagnostics_dropped += 1

    def _push_inbound(self, event: SessionEvent) -> None:
        if self.role is not SessionRole.SOURCE or self._stream_closed:
            return
        self._inbound.put_nowait(event)

    # ------------------------------------------------------------------
    # paho callbacks, invoked on paho's network thread and marshalled onto
    # the event loop
    # ------------------------------------------------------------------
    def _call_soon(self, callback: Callable[..., None], *args: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(callback, *args)

    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        self._call_soon(self._handle_connect, client, reason_code)

    def _on_connect_fail(self, client, userdata) -> None:
        self._call_soon(self._handle_connect_fail, client)

    def _on_disconnect(
        self, client, userdata, disconnect_flags, reason_code, properties=None
    ) -> None:
        self._call_soon(self._handle_disconnect, client, reason_code)

    def _on_message(self, client, userdata, message: mqtt.MQTTMessage) -> None:
        self._call_soon(
            self._push_inbound, InboundMessage(message.topic, bytes(message.payload))
        )

    def _on_subscribe(
        self, client, userdata, mid: int, reason_code_list, properties=None
    ) -> None:
        self._call_soon(self._handle_suback, mid, list(reason_code_list))

    def _on_publish(self, client, userdata, mid: int, reason_code, properties=None) -> None:
        self._call_soon(
            self._emit_diagnostic, SessionNotice("puback", f"mid={mid} rc={reason_code}")
        )

    def _on_log(self, client, userdata, level: int, buf: str) -> None:
        self._call_soon(self._emit_diagnostic, SessionNotice("log", buf))

    def _handle_connect(self, client, reason_code) -> None:
        if client is not self._client:
            return

        self._last_connect_rc = reason_code
        if reason_code == 0:
            LOGGER.info("Connected to %s broker", self.role.value)
            self._connected = True
        else:
            LOGGER.error(
                "%s broker connection failed with rc=%s", self.role.value, reason_code
            )
            self._connected = False

        self._push_inbound(SessionNotice("connack", str(reason_code)))
        if self._connected_event is not None:
            self._connected_event.set()

    def _handle_connect_fail(self, client) -> None:
        if client is not self._client:
            return
        self._connect_failed = True
        if self._connected_event is not None:
            self._connected_event.set()

    def _handle_disconnect(self, client, reason_code) -> None:
        if client is not self._client:
            return

        self._connected = False
        if self._disconnect_event is not None:
            self._disconnect_event.set()
        self._push_inbound(SessionNotice("disconnect", str(reason_code)))

        if self._expected_disconnect:
            LOGGER.info("Disconnected from %s broker", self.role.value)
            return

        LOGGER.warning(
            "Lost connection to %s broker (rc=%s)", self.role.value, reason_code
        )
        # Stops the lost client for good. The coordinator reconnects with a fresh one.
        self._expected_disconnect = True
        client.disconnect()

        for handler in self._disconnect_handlers:
            handler(reason_code)

    def _handle_suback(self, mid: int, reason_codes: List[Any]) -> None:
        self._push_inbound(
            SessionNotice("suback", f"mid={mid} {', '.join(map(str, reason_codes))}")
        )
        ack = self._pending_subacks.get(mid)
        if ack is not None and not ack.done():
            ack.set_result(reason_codes)
