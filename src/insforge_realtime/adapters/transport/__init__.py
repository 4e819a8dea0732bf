"""Realtime transports."""

from insforge_realtime.adapters.transport.base import (
    ExponentialBackoff,
    TransportClosedError,
    TransportPort,
)
from insforge_realtime.adapters.transport.protocol import Frame
from insforge_realtime.adapters.transport.socketio_client import SocketIOTransport

__all__ = [
    "ExponentialBackoff",
    "Frame",
    "SocketIOTransport",
    "TransportClosedError",
    "TransportPort",
]
