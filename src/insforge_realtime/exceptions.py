"""Exception taxonomy for the realtime client.

Every error raised by the library derives from RealtimeError so that callers
can catch the whole family with one clause. Errors that mirror builtin
categories also inherit from the builtin (connection failures are a
ConnectionError, malformed filters are a ValueError).
"""

from __future__ import annotations

from typing import Any


class RealtimeError(Exception):
    """Base class for all realtime client errors."""


class RealtimeConnectionError(RealtimeError, ConnectionError):
    """Handshake or transport failure."""


class NotConnectedError(RealtimeError):
    """A send was attempted while the connection is not usable."""


class SubscriptionTimeoutError(RealtimeError):
    """No subscription acknowledgment arrived within the bound."""

    def __init__(self, channel: str, timeout_s: float) -> None:
        super().__init__(f"Channel '{channel}' was not acknowledged within {timeout_s}s")
        self.channel = channel
        self.timeout_s = timeout_s


class SubscriptionRejectedError(RealtimeError):
    """The server answered a subscription request with an error status."""

    def __init__(self, channel: str, code: str, message: str) -> None:
        super().__init__(f"Subscription to '{channel}' rejected: {code}: {message}")
        self.channel = channel
        self.code = code
        self.message = message


class ResubscriptionFailedError(RealtimeError):
    """Re-sending a subscription after a reconnect did not succeed."""

    def __init__(self, channel: str, reason: str) -> None:
        super().__init__(f"Resubscription of '{channel}' failed: {reason}")
        self.channel = channel
        self.reason = reason


class ChannelClosedError(RealtimeError):
    """Operation on a channel that was released or whose connection is gone."""


class InvalidFilterError(RealtimeError, ValueError):
    """A change-feed filter failed validation at registration time."""


class AlreadySubscribingError(RealtimeError):
    """A listener was registered after subscribe() had been called."""


class DecodeError(RealtimeError):
    """An event payload does not fit the requested record shape."""

    def __init__(self, shape: Any, errors: list[dict[str, Any]] | None = None) -> None:
        name = getattr(shape, "__name__", repr(shape))
        super().__init__(f"Payload does not match {name}")
        self.shape = shape
        self.errors = errors or []


class ProtocolError(RealtimeError):
    """An inbound frame does not follow the realtime message schema."""


class RealtimeServerError(RealtimeError):
    """Unsolicited error reported by the server (realtime:error)."""

    def __init__(self, code: str, message: str, channel: str | None = None) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
        self.channel = channel


class RealtimeHTTPError(RealtimeError):
    """Non-success response from the realtime REST API."""

    def __init__(
        self,
        status_code: int,
        error: str,
        message: str,
        next_actions: str | None = None,
    ) -> None:
        super().__init__(f"HTTP {status_code} {error}: {message}")
        self.status_code = status_code
        self.error = error
        self.message = message
        self.next_actions = next_actions
