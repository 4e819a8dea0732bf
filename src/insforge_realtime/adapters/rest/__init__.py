"""REST management API for realtime channels and message history."""

from insforge_realtime.adapters.rest.client import RealtimeRestClient
from insforge_realtime.adapters.rest.models import (
    DeleteChannelResponse,
    EventCount,
    MessageStats,
    RealtimeChannel,
    RealtimeMessage,
)

__all__ = [
    "DeleteChannelResponse",
    "EventCount",
    "MessageStats",
    "RealtimeChannel",
    "RealtimeMessage",
    "RealtimeRestClient",
]
