"""Health and metrics HTTP endpoint for gbridge-bridge."""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST

from .adapters.mqtt import SessionRole
from .instrumentation import BridgeMetrics

LOGGER = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec="seconds") if value is not None else None


@dataclass(slots=True)
class SessionHealth:
    role: SessionRole
    connected: bool = False
    detail: Optional[str] = "not connected"
    since: datetime = field(default_factory=_now)

    def as_dict(self) -> Dict[str, object]:
        return {
            "connected": self.connected,
            "detail": self.detail,
            "since": _isoformat(self.since),
        }


class HealthReporter:
    """Health of the two broker sessions and of the bridge loop.

    The bridge is reported ``ok`` only while it is relaying and both sessions
    are connected. Everything else, including startup, is ``degraded``.
    """

    def __init__(self) -> None:
        self._sessions: Dict[SessionRole, SessionHealth] = {
            role: SessionHealth(role) for role in SessionRole
        }
        self._state: Optional[str] = None
        self._relaying = False
        self._state_since: Optional[datetime] = None
        self._last_relay_at: Optional[datetime] = None

    def mark_connected(self, role: SessionRole) -> None:
        self._sessions[role] = SessionHealth(role, connected=True, detail=None)

    def mark_disconnected(self, role: SessionRole, detail: str) -> None:
        self._sessions[role] = SessionHealth(role, connected=False, detail=detail)

    def mark_closed(self) -> None:
        """Mark sessions closed by shutdown, keeping the reason of earlier losses."""

        for role, session in self._sessions.items():
            if session.connected:
                self.mark_disconnected(role, "closed")

    def set_bridge_state(self, state: str, *, relaying: bool) -> None:
        self._state = state
        self._relaying = relaying
        self._state_since = _now()

    def record_relay(self) -> None:
        self._last_relay_at = _now()

    @property
    def healthy(self) -> bool:
        return self._relaying and all(
            session.connected for session in self._sessions.values()
        )

    def snapshot(self) -> Dict[str, object]:
        return {
            "status": "ok" if self.healthy else "degraded",
            "bridgeState": {
                "state": self._state,
                "relaying": self._relaying,
                "since": _isoformat(self._state_since),
            },
            "sessions": {
                role.value: session.as_dict()
                for role, session in self._sessions.items()
            },
            "lastRelayAt": _isoformat(self._last_relay_at),
        }


class HealthServer:
    """Minimal HTTP server exposing `/healthz` and `/metrics`."""

    def __init__(
        self,
        reporter: HealthReporter,
        host: str,
        port: int,
        *,
        metrics: Optional[BridgeMetrics] = None,
    ) -> None:
        self._reporter = reporter
        self._metrics = metrics
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)
        if self._metrics is not None:
            app.router.add_get("/metrics", self._handle_metrics)

        self._runner = web.AppRunner(app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        LOGGER.info("Observability endpoint listening on http://%s:%s", self._host, self._port)

    async def stop(self) -> None:
        with contextlib.suppress(Exception):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = self._reporter.snapshot()
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(snapshot, status=status)

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        assert self._metrics is not None
        return web.Response(
            body=self._metrics.render(),
            headers={"Content-Type": CONTENT_TYPE_LATEST},
        )
