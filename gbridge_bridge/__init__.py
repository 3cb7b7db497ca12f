"""Relay gBridge switch commands onto a second MQTT broker as tristate codes."""

from .version import __version__

__all__ = ["__version__"]
