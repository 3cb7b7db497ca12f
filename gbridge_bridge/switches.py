"""Switch lookup table and the topic/payload to tristate command transform."""

from __future__ import annotations

from types import MappingProxyType
from typing import Iterable, Iterator, Mapping, Optional

from . import constants
from .config import SwitchConfig

PAYLOAD_OFF = "0"
PAYLOAD_ON = "1"


class SwitchTable(Mapping[str, SwitchConfig]):
    """Read-only mapping of switch name to its configured commands."""

    __slots__ = ("_entries",)

    def __init__(self, entries: Mapping[str, SwitchConfig]) -> None:
        self._entries = MappingProxyType(dict(entries))

    def __getitem__(self, name: str) -> SwitchConfig:
        return self._entries[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"SwitchTable({sorted(self._entries)!r})"


def prepare_switch_configs(switches: Iterable[SwitchConfig]) -> SwitchTable:
    """Key switch configs by name.

    A name that appears more than once keeps the last entry.
    """

    entries: dict[str, SwitchConfig] = {}
    for switch in switches:
        entries[switch.name] = switch
    return SwitchTable(entries)


def zap_tristate(
    topic: str, payload: str, table: Mapping[str, SwitchConfig]
) -> Optional[str]:
    """Translate a ``"0"``/``"1"`` switch signal into its tristate command.

    The switch is named by the third ``/``-delimited segment of ``topic``.
    Returns None when the topic is too short, names an unknown switch, or
    the payload is anything other than the exact strings ``"0"`` and ``"1"``.
    """

    segments = topic.split("/")
    if len(segments) <= constants.SWITCH_TOPIC_SEGMENT:
        return None

    switch = table.get(segments[constants.SWITCH_TOPIC_SEGMENT])
    if switch is None:
        return None

    if payload == PAYLOAD_OFF:
        return switch.off
    if payload == PAYLOAD_ON:
        return switch.on
    return None
