"""Connection supervision and reconnection management.

paho-mqtt ships its own reconnect loop, but the bridge does not rely on it.
Each broker session gets a ConnectionCoordinator that owns the initial
connect and, after an unexpected disconnect, tears the client down and
reconnects with exponential backoff. Running out of attempts is reported to
registered callbacks; the bridge treats it as fatal.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, List, Optional, Union

if TYPE_CHECKING:
    from .adapters.mqtt import BrokerSession
    from .config import ResilienceConfig
    from .instrumentation import BridgeMetrics

LOGGER = logging.getLogger(__name__)

Callback = Callable[..., Union[Awaitable[None], None]]


class ReconnectReason(str, Enum):
    """Reason for requesting a reconnection."""

    CONNECTION_LOST = "connection_lost"
    """Broker connection dropped unexpectedly."""

    RESUBSCRIBE_FAILED = "resubscribe_failed"
    """Reconnected, but restoring subscriptions failed."""


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    """Reconnection attempts were exhausted."""


class ConnectionCoordinator:
    """Coordinates one broker session's lifecycle and reconnection.

    Reconnect requests are coalesced and serialized: only one reconnection
    runs at a time, and disconnect notifications raised while it runs are
    ignored.
    """

    def __init__(
        self,
        *,
        session: BrokerSession,
        resilience_config: ResilienceConfig,
        metrics: Optional[BridgeMetrics] = None,
    ) -> None:
        self._session = session
        self._resilience = resilience_config
        self._metrics = metrics

        self._state = ConnectionState.DISCONNECTED
        self._reconnect_lock = asyncio.Lock()
        self._reconnect_event = asyncio.Event()
        self._pending_reason: Optional[ReconnectReason] = None
        self._stop_event = asyncio.Event()
        self._supervisor_task: Optional[asyncio.Task[None]] = None

        self._on_disconnected_callbacks: List[Callback] = []
        self._on_reconnected_callbacks: List[Callback] = []
        self._on_exhausted_callbacks: List[Callback] = []

        session.register_disconnect_handler(self._on_session_disconnect)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def role(self) -> str:
        return self._session.role.value

    def request_reconnect(self, reason: ReconnectReason) -> None:
        """Request a reconnection; repeated requests collapse into one."""

        if self._stop_event.is_set():
            return

        if (
            reason == ReconnectReason.CONNECTION_LOST
            and self._state == ConnectionState.RECONNECTING
        ):
            return

        if self._pending_reason is None:
            LOGGER.debug("Reconnect requested for %s: %s", self.role, reason.value)
        self._pending_reason = reason
        self._reconnect_event.set()

    async def connect(self) -> None:
        """Establish the initial connection. Failures propagate to the caller.

        Raises:
            BrokerConnectionError: If the broker cannot be reached or rejects us.
        """
        self._state = ConnectionState.CONNECTING
        LOGGER.info("Establishing %s connection", self.role)

        try:
            await self._attempt_connect()
        except Exception:
            self._state = ConnectionState.DISCONNECTED
            raise
        self._state = ConnectionState.CONNECTED

    async def disconnect(self) -> None:
        LOGGER.info("Closing %s connection", self.role)
        self._state = ConnectionState.DISCONNECTED
        await self._session.close()

    def start_supervisor(self) -> None:
        if self._supervisor_task is not None and not self._supervisor_task.done():
            LOGGER.warning("Supervisor for %s already running", self.role)
            return

        self._stop_event.clear()
        self._supervisor_task = asyncio.create_task(self._supervision_loop())

    async def stop_supervisor(self) -> None:
        self._stop_event.set()
        self._reconnect_event.set()

        if self._supervisor_task is not None:
            self._supervisor_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._supervisor_task
            self._supervisor_task = None

    def register_disconnected_callback(self, callback: Callback) -> None:
        """Invoked with the reason before a reconnection starts."""
        self._on_disconnected_callbacks.append(callback)

    def register_reconnected_callback(self, callback: Callback) -> None:
        """Invoked after a successful reconnection."""
        self._on_reconnected_callbacks.append(callback)

    def register_exhausted_callback(self, callback: Callback) -> None:
        """Invoked once reconnection attempts run out."""
        self._on_exhausted_callbacks.append(callback)

    def _on_session_disconnect(self, reason_code: Any) -> None:
        self.request_reconnect(ReconnectReason.CONNECTION_LOST)

    async def _attempt_connect(self) -> None:
        timer = (
            self._metrics.time_connect(self.role)
            if self._metrics is not None
            else contextlib.nullcontext()
        )
        with timer:
            await self._session.connect(
                timeout=self._resilience.connect_timeout_seconds
            )

    async def _supervision_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self._reconnect_event.wait()
            except asyncio.CancelledError:
                break

            self._reconnect_event.clear()

            if self._stop_event.is_set():
                break

            async with self._reconnect_lock:
                reason = self._pending_reason
                self._pending_reason = None

                if reason is None:
                    continue

                await self._execute_reconnect(reason)

    async def _execute_reconnect(self, reason: ReconnectReason) -> None:
        LOGGER.info("Reconnecting %s session (reason=%s)", self.role, reason.value)
        self._state = ConnectionState.RECONNECTING

        await self._notify(self._on_disconnected_callbacks, reason)

        try:
            await self._session.disconnect()
        except Exception:
            LOGGER.debug("Cleanup disconnect of %s failed", self.role, exc_info=True)

        connected = await self._connect_with_backoff()

        if not connected:
            if self._stop_event.is_set():
                return
            self._state = ConnectionState.FAILED
            LOGGER.error("Giving up reconnecting to the %s broker", self.role)
            await self._notify(self._on_exhausted_callbacks)
            return

        self._state = ConnectionState.CONNECTED
        if self._metrics is not None:
            self._metrics.record_reconnect(self.role)
        LOGGER.info("%s connection restored", self.role)

        for callback in self._on_reconnected_callbacks:
            try:
                result = callback()
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                LOGGER.exception("Reconnected callback for %s failed", self.role)
                self.request_reconnect(ReconnectReason.RESUBSCRIBE_FAILED)
                return

    async def _notify(self, callbacks: List[Callback], *args: Any) -> None:
        for callback in callbacks:
            try:
                result = callback(*args)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                LOGGER.warning("%s callback failed", self.role, exc_info=True)

    async def _connect_with_backoff(self) -> bool:
        """Attempt to connect with exponential backoff and jitter.

        Returns:
            True if a connection was established, False when attempts ran
            out or the supervisor was stopped.
        """
        delay = max(0.01, self._resilience.reconnect_initial_seconds)
        max_delay = max(delay, self._resilience.reconnect_max_seconds)
        jitter_ratio = max(0.0, min(1.0, self._resilience.reconnect_jitter_ratio))
        max_attempts = self._resilience.reconnect_max_attempts

        attempt = 0
        while not self._stop_event.is_set():
            attempt += 1

            try:
                LOGGER.debug("%s connection attempt %d", self.role, attempt)
                await self._attempt_connect()
                return True
            except Exception as exc:
                if max_attempts > 0 and attempt >= max_attempts:
                    LOGGER.warning(
                        "%s connection attempt %d failed: %s", self.role, attempt, exc
                    )
                    return False
                LOGGER.warning(
                    "%s connection attempt %d failed: %s, retrying in %.1fs",
                    self.role,
                    attempt,
                    exc,
                    delay,
                )

            sleep_for = delay
            if jitter_ratio > 0.0:
                jitter = delay * jitter_ratio
                sleep_for = random.uniform(max(0.01, delay - jitter), delay + jitter)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_for)
                break
            except asyncio.TimeoutError:
                pass

            delay = min(delay * 2, max_delay)

        return False
