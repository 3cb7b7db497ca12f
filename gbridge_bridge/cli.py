"""Command-line interface for gbridge-bridge."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional

from . import constants
from .app import GbridgeBridgeApp
from .config import BridgeConfig, ConfigError, load_config
from .switches import prepare_switch_configs


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=constants.APP_NAME,
        description="Relay gBridge switch commands to a second MQTT broker",
    )
    parser.add_argument("config", type=Path, help="Path to the configuration file")
    parser.add_argument(
        "--check",
        action="store_true",
        help="Validate the configuration, print the switch table and exit",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(f"{constants.APP_NAME}: {exc}", file=sys.stderr)
        return 1

    if args.check:
        print_config(config)
        return 0

    return GbridgeBridgeApp.start(config)


def print_config(config: BridgeConfig) -> None:
    print(f"Configuration loaded from {config.path!s}\n")
    for label, connection in (("source", config.source), ("target", config.target)):
        print(
            f"{label}: {connection.user}@{connection.host}:{connection.port}"
            f" (client id {connection.client_id})"
        )
    print(f"subscribe: {config.source_topic_filter}")
    print(f"publish:   {config.target_topic}\n")

    table = prepare_switch_configs(config.switches)
    print(f"switches ({len(table)}):")
    for name, switch in table.items():
        print(f"  {name}: on={switch.on} off={switch.off}")


if __name__ == "__main__":
    sys.exit(main())
