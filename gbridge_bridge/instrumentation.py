"""Metrics and error reporting sinks for the bridge pipeline."""

from __future__ import annotations

import asyncio
import logging
import platform
import traceback
from datetime import datetime, timezone
from typing import Any, ContextManager, Dict, Optional

import aiohttp
from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

from . import constants
from .version import __version__

LOGGER = logging.getLogger(__name__)

CONNECT_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)


class BridgeMetrics:
    """Counters and timers for one bridge process.

    Metrics live on a private registry so several bridges (or tests) can
    coexist in one interpreter.

    prometheus_client appends ``_total`` to counter samples, so ``publish_count``
    is scraped as ``publish_count_total``.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry or CollectorRegistry()

        self.publish_count = Counter(
            "publish_count",
            "Commands relayed to the target broker",
            registry=self.registry,
        )
        self.inbound_messages = Counter(
            "inbound_messages",
            "Publish events received from the source broker",
            registry=self.registry,
        )
        self.unmatched_messages = Counter(
            "unmatched_messages",
            "Inbound messages that mapped to no switch command",
            registry=self.registry,
        )
        self.message_errors = Counter(
            "message_errors",
            "Inbound messages that failed to relay",
            ["kind"],
            registry=self.registry,
        )
        self.reconnects = Counter(
            "reconnects",
            "Successful reconnections per broker session",
            ["role"],
            registry=self.registry,
        )
        self.connect_seconds = Histogram(
            "connect_seconds",
            "Time spent establishing a broker connection",
            ["role"],
            buckets=CONNECT_BUCKETS,
            registry=self.registry,
        )

    def record_publish(self) -> None:
        self.publish_count.inc()

    def record_inbound(self) -> None:
        self.inbound_messages.inc()

    def record_unmatched(self) -> None:
        self.unmatched_messages.inc()

    def record_error(self, kind: str) -> None:
        self.message_errors.labels(kind=kind).inc()

    def record_reconnect(self, role: str) -> None:
        self.reconnects.labels(role=role).inc()

    def time_connect(self, role: str) -> ContextManager[Any]:
        return self.connect_seconds.labels(role=role).time()

    def render(self) -> bytes:
        return generate_latest(self.registry)


class ErrorReporter:
    """Forwards captured exceptions as JSON events to an HTTP endpoint.

    A reporter without an endpoint only logs. Delivery problems are logged
    and never raised, so reporting cannot take the bridge down.
    """

    def __init__(
        self,
        endpoint: Optional[str],
        *,
        session: Optional[aiohttp.ClientSession] = None,
        request_timeout: float = 10.0,
    ) -> None:
        self._endpoint = endpoint
        self._session = session
        self._owns_session = session is None
        self._request_timeout = request_timeout
        self.sent = 0
        self.failed = 0

    @property
    def enabled(self) -> bool:
        return bool(self._endpoint)

    async def capture(
        self, exc: BaseException, *, context: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Send ``exc`` to the endpoint. Returns True when it was accepted."""

        if not self._endpoint:
            return False

        payload = build_error_event(exc, context=context)

        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._request_timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

        try:
            async with asyncio.timeout(self._request_timeout):
                async with self._session.post(self._endpoint, json=payload) as response:
                    if 200 <= response.status < 300:
                        self.sent += 1
                        return True
                    body = await response.text()
                    LOGGER.warning(
                        "Error endpoint rejected event with status %s: %s",
                        response.status,
                        body[:200],
                    )
        except asyncio.TimeoutError:
            LOGGER.warning("Timed out sending error event to %s", self._endpoint)
        except aiohttp.ClientError as exc_info:
            LOGGER.warning("Could not send error event: %s", exc_info)

        self.failed += 1
        return False

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None


def build_error_event(
    exc: BaseException, *, context: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    return {
        "service": constants.APP_NAME,
        "version": __version__,
        "level": "error",
        "timestamp": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        "host": platform.node(),
        "exception": {
            "type": type(exc).__name__,
            "message": str(exc),
            "stacktrace": "".join(
                traceback.format_exception(type(exc), exc, exc.__traceback__)
            ),
        },
        "context": dict(context or {}),
    }
