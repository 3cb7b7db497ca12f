"""Adapter modules for external integrations."""

from .mqtt import (
    BrokerConnectionError,
    BrokerError,
    BrokerSession,
    InboundMessage,
    PublishError,
    SessionEvent,
    SessionNotice,
    SessionRole,
    StreamClosed,
    SubscribeError,
    build_tls_context,
)

__all__ = [
    "BrokerConnectionError",
    "BrokerError",
    "BrokerSession",
    "InboundMessage",
    "PublishError",
    "SessionEvent",
    "SessionNotice",
    "SessionRole",
    "StreamClosed",
    "SubscribeError",
    "build_tls_context",
]
