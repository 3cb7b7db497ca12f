"""Main application entry-point for gbridge-bridge."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import Optional, Tuple
from urllib.parse import urlparse

from .adapters import BrokerError, BrokerSession, SessionRole, StreamClosed
from .bridge import BridgeLoop
from .config import BridgeConfig, ConfigError, read_ca_bundle, split_host_port
from .health import HealthReporter, HealthServer
from .instrumentation import BridgeMetrics, ErrorReporter
from .logging import configure_logging
from .version import __version__

LOGGER = logging.getLogger(__name__)

DEFAULT_METRICS_HOST = "127.0.0.1"
DEFAULT_METRICS_PORT = 9310

_STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class GbridgeBridgeApp:
    """Coordinates process startup, the bridge run, and shutdown.

    Broker sessions, metrics and the error reporter can be injected for
    testing; otherwise they are built from the configuration.
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        source: Optional[BrokerSession] = None,
        target: Optional[BrokerSession] = None,
        metrics: Optional[BridgeMetrics] = None,
        error_reporter: Optional[ErrorReporter] = None,
    ) -> None:
        self._config = config
        self._source = source
        self._target = target
        self._metrics = metrics or BridgeMetrics()
        self._errors = error_reporter or ErrorReporter(config.error_endpoint)
        self._health = HealthReporter()
        self._health_server: Optional[HealthServer] = None
        self._bridge: Optional[BridgeLoop] = None
        self._signals_installed = False

    @property
    def bridge(self) -> Optional[BridgeLoop]:
        return self._bridge

    async def run(self) -> int:
        """Run the bridge until it stops. Returns the process exit status."""

        LOGGER.info(
            "gbridge-bridge %s starting with config: %s", __version__, self._config.path
        )

        try:
            self._bridge = self._build_bridge()
            self._install_signal_handlers()
            await self._start_health_server()
            await self._bridge.run()
        except StreamClosed as exc:
            LOGGER.warning("Bridge stopped: %s", exc)
            await self._errors.capture(exc, context={"stage": self._stage()})
            return 1
        except (BrokerError, ConfigError) as exc:
            LOGGER.error("Bridge failed: %s", exc)
            await self._errors.capture(exc, context={"stage": self._stage()})
            return 1
        except Exception as exc:
            LOGGER.exception("Unexpected error while running the bridge")
            await self._errors.capture(exc, context={"stage": self._stage()})
            return 1
        finally:
            self._remove_signal_handlers()
            await self._stop_health_server()
            await self._errors.close()

        LOGGER.info("gbridge-bridge stopped")
        return 0

    def stop(self) -> None:
        if self._bridge is not None:
            self._bridge.stop()

    @classmethod
    def start(cls, config: BridgeConfig) -> int:
        configure_logging(
            config.logging.level,
            log_path=config.logging.path,
            log_network=config.logging.log_network,
        )
        instance = cls(config)
        try:
            return asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("gbridge-bridge received shutdown signal")
            return 0

    def _build_bridge(self) -> BridgeLoop:
        config = self._config
        ca_bundle = read_ca_bundle(config.ca_file)

        source = self._source or BrokerSession(
            config.source,
            role=SessionRole.SOURCE,
            ca_bundle=ca_bundle,
            keep_alive=config.keep_alive,
        )
        target = self._target or BrokerSession(
            config.target,
            role=SessionRole.TARGET,
            ca_bundle=ca_bundle,
            keep_alive=config.keep_alive,
        )

        return BridgeLoop(
            config,
            source=source,
            target=target,
            metrics=self._metrics,
            error_reporter=self._errors,
            health=self._health,
        )

    def _stage(self) -> str:
        if self._bridge is None or self._bridge.exit_state is None:
            return "startup"
        return self._bridge.exit_state.value

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in _STOP_SIGNALS:
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError):
                return
        self._signals_installed = True

    def _remove_signal_handlers(self) -> None:
        if not self._signals_installed:
            return
        loop = asyncio.get_running_loop()
        for sig in _STOP_SIGNALS:
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(sig)
        self._signals_installed = False

    async def _start_health_server(self) -> None:
        endpoint = self._config.metrics_endpoint
        if not endpoint:
            return

        host, port = parse_listen_endpoint(endpoint)
        server = HealthServer(self._health, host, port, metrics=self._metrics)
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Failed to start metrics endpoint on %s: %s", endpoint, exc)
        else:
            self._health_server = server

    async def _stop_health_server(self) -> None:
        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None


def parse_listen_endpoint(value: str) -> Tuple[str, int]:
    """Parse ``host:port``, ``:port``, a bare port, or an ``http://`` URL."""

    if "://" in value:
        parsed = urlparse(value)
        return parsed.hostname or DEFAULT_METRICS_HOST, parsed.port or DEFAULT_METRICS_PORT
    if value.isdigit():
        return DEFAULT_METRICS_HOST, int(value)
    host, port = split_host_port(value, DEFAULT_METRICS_PORT)
    return host or DEFAULT_METRICS_HOST, port
