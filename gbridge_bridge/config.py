"""Configuration loader for gbridge-bridge."""

from __future__ import annotations

import configparser
import re
from configparser import ConfigParser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from . import constants

_PEM_CERTIFICATE = re.compile(
    r"-----BEGIN CERTIFICATE-----.+?-----END CERTIFICATE-----", re.DOTALL
)


class ConfigError(ValueError):
    """Raised when the configuration file is unreadable or invalid."""


@dataclass(frozen=True, slots=True)
class ConnectionConfig:
    host: str
    user: str
    password: str
    port: int = constants.DEFAULT_BROKER_PORT
    client_id: str = constants.DEFAULT_CLIENT_ID


@dataclass(frozen=True, slots=True)
class SwitchConfig:
    name: str
    on: str
    off: str


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    log_network: bool = False


@dataclass(frozen=True, slots=True)
class ResilienceConfig:
    connect_timeout_seconds: float = 30.0
    subscribe_timeout_seconds: float = 10.0
    reconnect_initial_seconds: float = 1.0
    reconnect_max_seconds: float = 60.0
    reconnect_jitter_ratio: float = 0.5
    reconnect_max_attempts: int = 10  # 0 retries forever
    publish_retry_attempts: int = 3
    publish_retry_delay_seconds: float = 0.5


@dataclass(frozen=True, slots=True)
class BridgeConfig:
    source: ConnectionConfig
    target: ConnectionConfig
    source_topic_prefix: str
    target_topic: str
    switches: List[SwitchConfig] = field(default_factory=list)
    metrics_endpoint: Optional[str] = None
    error_endpoint: Optional[str] = None
    keep_alive: int = constants.DEFAULT_KEEP_ALIVE
    ordered_delivery: bool = False
    max_inflight_messages: int = 32
    ca_file: Optional[Path] = None
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    resilience: ResilienceConfig = field(default_factory=ResilienceConfig)
    path: Optional[Path] = None

    @property
    def source_topic_filter(self) -> str:
        return f"{self.source_topic_prefix}#"


def split_host_port(value: str, default_port: int) -> Tuple[str, int]:
    """Split ``host:port``, leaving bare hosts on ``default_port``."""

    if ":" in value:
        host_part, port_part = value.rsplit(":", 1)
        try:
            return host_part, int(port_part)
        except ValueError:
            pass
    return value, default_port


def load_config(path: Path) -> BridgeConfig:
    """Load and validate the bridge configuration from ``path``."""

    parser = ConfigParser(interpolation=None)
    try:
        with path.open("r", encoding="utf-8") as stream:
            parser.read_file(stream)
    except OSError as exc:
        raise ConfigError(f"Cannot read configuration {path}: {exc}") from exc
    except configparser.Error as exc:
        raise ConfigError(f"Malformed configuration {path}: {exc}") from exc

    try:
        return _build_config(parser, path)
    except ConfigError:
        raise
    except (configparser.Error, ValueError) as exc:
        raise ConfigError(f"Invalid configuration {path}: {exc}") from exc


def _build_config(parser: ConfigParser, path: Path) -> BridgeConfig:
    source = _parse_connection(parser, "source")
    target = _parse_connection(parser, "target")

    source_topic_prefix = _require(parser, "bridge", "source_topic_prefix")
    target_topic = _require(parser, "bridge", "target_topic")

    metrics_endpoint = parser.get("observability", "metrics_endpoint", fallback="")
    error_endpoint = parser.get("observability", "error_endpoint", fallback="")
    ca_file = parser.get("tls", "ca_file", fallback="")

    log_path = parser.get("logging", "path", fallback="")
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path).expanduser() if log_path else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    defaults = ResilienceConfig()
    resilience = ResilienceConfig(
        connect_timeout_seconds=parser.getfloat(
            "resilience",
            "connect_timeout_seconds",
            fallback=defaults.connect_timeout_seconds,
        ),
        subscribe_timeout_seconds=parser.getfloat(
            "resilience",
            "subscribe_timeout_seconds",
            fallback=defaults.subscribe_timeout_seconds,
        ),
        reconnect_initial_seconds=parser.getfloat(
            "resilience",
            "reconnect_initial_seconds",
            fallback=defaults.reconnect_initial_seconds,
        ),
        reconnect_max_seconds=parser.getfloat(
            "resilience",
            "reconnect_max_seconds",
            fallback=defaults.reconnect_max_seconds,
        ),
        reconnect_jitter_ratio=max(
            0.0,
            min(
                1.0,
                parser.getfloat(
                    "resilience",
                    "reconnect_jitter_ratio",
                    fallback=defaults.reconnect_jitter_ratio,
                ),
            ),
        ),
        reconnect_max_attempts=max(
            0,
            parser.getint(
                "resilience",
                "reconnect_max_attempts",
                fallback=defaults.reconnect_max_attempts,
            ),
        ),
        publish_retry_attempts=max(
            1,
            parser.getint(
                "resilience",
                "publish_retry_attempts",
                fallback=defaults.publish_retry_attempts,
            ),
        ),
        publish_retry_delay_seconds=max(
            0.0,
            parser.getfloat(
                "resilience",
                "publish_retry_delay_seconds",
                fallback=defaults.publish_retry_delay_seconds,
            ),
        ),
    )

    return BridgeConfig(
        source=source,
        target=target,
        source_topic_prefix=source_topic_prefix,
        target_topic=target_topic,
        switches=_parse_switches(parser),
        metrics_endpoint=metrics_endpoint or None,
        error_endpoint=error_endpoint or None,
        keep_alive=max(
            1,
            parser.getint(
                "bridge", "keep_alive", fallback=constants.DEFAULT_KEEP_ALIVE
            ),
        ),
        ordered_delivery=parser.getboolean(
            "bridge", "ordered_delivery", fallback=False
        ),
        max_inflight_messages=max(
            1, parser.getint("bridge", "max_inflight_messages", fallback=32)
        ),
        ca_file=Path(ca_file).expanduser() if ca_file else None,
        logging=logging_config,
        resilience=resilience,
        path=path,
    )


def _require(parser: ConfigParser, section: str, option: str) -> str:
    if not parser.has_section(section):
        raise ConfigError(f"Missing [{section}] section")
    value = parser.get(section, option, fallback="")
    if not value:
        raise ConfigError(f"Missing required option '{option}' in [{section}]")
    return value


def _parse_connection(parser: ConfigParser, section: str) -> ConnectionConfig:
    host_value = _require(parser, section, "host")
    port = parser.getint(section, "port", fallback=constants.DEFAULT_BROKER_PORT)
    host, port = split_host_port(host_value, port)

    return ConnectionConfig(
        host=host,
        user=_require(parser, section, "user"),
        password=_require(parser, section, "password"),
        port=port,
        client_id=parser.get(
            section, "client_id", fallback=constants.DEFAULT_CLIENT_ID
        ),
    )


def _parse_switches(parser: ConfigParser) -> List[SwitchConfig]:
    switches: List[SwitchConfig] = []
    seen: Dict[str, str] = {}
    for section in parser.sections():
        if not section.startswith(constants.SWITCH_SECTION_PREFIX):
            continue
        name = section[len(constants.SWITCH_SECTION_PREFIX) :].strip()
        if not name:
            raise ConfigError(f"Switch section [{section}] has no name")
        if name in seen:
            raise ConfigError(
                f"Switch section [{section}] repeats switch '{name}' from [{seen[name]}]"
            )
        seen[name] = section
        switches.append(
            SwitchConfig(
                name=name,
                on=_require(parser, section, "on"),
                off=_require(parser, section, "off"),
            )
        )
    return switches


def read_ca_bundle(path: Optional[Path]) -> Optional[str]:
    """Return the certificates of the CA bundle as PEM text.

    Only the ``BEGIN/END CERTIFICATE`` blocks are kept, so label lines between
    certificates (as in curl's ``cacert.pem``) may use any UTF-8 text.
    Returns None for the system trust store.
    """

    if path is None:
        return None
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigError(f"Cannot read CA bundle {path}: {exc}") from exc

    certificates = _PEM_CERTIFICATE.findall(text)
    if not certificates:
        raise ConfigError(f"CA bundle {path} contains no PEM certificates")
    return "\n".join(certificates) + "\n"
