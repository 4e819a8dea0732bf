"""InsForge Realtime - asyncio client for realtime channels.

This package provides:
- One persistent, reconnecting Socket.IO connection per client
- Named channels multiplexed over it, with broadcast and database change listeners
- Ordered, per-channel event delivery once a subscription is acknowledged
- A REST client for channel management and message history
"""

__version__ = "0.1.0"

__author__ = "InsForge Realtime Team"

from insforge_realtime.application.channel import Channel, ChannelOptions
from insforge_realtime.application.connection import ConnectionState
from insforge_realtime.application.realtime import Realtime
from insforge_realtime.config.schema import RealtimeConfig, ReconnectConfig, TransportConfig
from insforge_realtime.domain.model.events import (
    BroadcastEvent,
    ChangeEvent,
    EventKind,
    MessageMeta,
    RawMessage,
)
from insforge_realtime.domain.rules.change_filter import ChangeFilter, Predicate
from insforge_realtime.domain.state_machine.subscription import ChannelState
from insforge_realtime.exceptions import (
    AlreadySubscribingError,
    ChannelClosedError,
    DecodeError,
    InvalidFilterError,
    NotConnectedError,
    ProtocolError,
    RealtimeConnectionError,
    RealtimeError,
    RealtimeHTTPError,
    RealtimeServerError,
    ResubscriptionFailedError,
    SubscriptionRejectedError,
    SubscriptionTimeoutError,
)

__all__ = [
    "AlreadySubscribingError",
    "BroadcastEvent",
    "ChangeEvent",
    "ChangeFilter",
    "Channel",
    "ChannelClosedError",
    "ChannelOptions",
    "ChannelState",
    "ConnectionState",
    "DecodeError",
    "EventKind",
    "InvalidFilterError",
    "MessageMeta",
    "NotConnectedError",
    "Predicate",
    "ProtocolError",
    "RawMessage",
    "Realtime",
    "RealtimeConfig",
    "RealtimeConnectionError",
    "RealtimeError",
    "RealtimeHTTPError",
    "RealtimeServerError",
    "ReconnectConfig",
    "ResubscriptionFailedError",
    "SubscriptionRejectedError",
    "SubscriptionTimeoutError",
    "TransportConfig",
    "__version__",
]
