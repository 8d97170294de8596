"""Client-side transport."""

from flowsync.client.session import (
    ConnectionState,
    QueuedCommand,
    TransportSession,
    websocket_connector,
)

__all__ = [
    "ConnectionState",
    "QueuedCommand",
    "TransportSession",
    "websocket_connector",
]
