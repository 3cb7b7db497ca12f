"""Constants used across the gbridge-bridge package."""

from __future__ import annotations

APP_NAME = "gbridge-bridge"

DEFAULT_CLIENT_ID = "zap"
DEFAULT_BROKER_PORT = 8883
DEFAULT_KEEP_ALIVE = 30

DEFAULT_QOS = 1

SWITCH_SECTION_PREFIX = "switch "

# Index of the `/`-delimited topic segment naming the switch.
SWITCH_TOPIC_SEGMENT = 2
