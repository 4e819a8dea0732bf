"""Transport port and shared utilities for realtime transports.

Defines the TransportPort protocol the connection drives, plus the backoff
policy used between reconnection attempts. The connection owns exactly one
transport at a time and is the only writer to it.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from insforge_realtime.exceptions import RealtimeConnectionError

if TYPE_CHECKING:
    from insforge_realtime.adapters.transport.protocol import Frame


class TransportClosedError(RealtimeConnectionError):
    """The transport was closed, by the server or locally."""


@runtime_checkable
class TransportPort(Protocol):
    """Protocol defining the interface for realtime transports.

    Implementations deliver inbound frames in the order the server sent
    them and report a dropped link by raising TransportClosedError from
    receive().
    """

    @property
    def sid(self) -> str | None:
        """Return the server-assigned session id, if connected."""
        ...

    async def open(self, url: str, token: str | None) -> None:
        """Perform the handshake, presenting the bearer token.

        Raises:
            RealtimeConnectionError: If the handshake fails
        """
        ...

    async def send(self, frame: Frame) -> None:
        """Write one frame.

        Raises:
            TransportClosedError: If the transport is not open
        """
        ...

    async def receive(self) -> Frame:
        """Wait for the next inbound frame.

        Raises:
            TransportClosedError: When the link drops or is closed
        """
        ...

    async def close(self) -> None:
        """Close the link. Safe to call more than once."""
        ...


@dataclass
class ExponentialBackoff:
    """Exponential backoff with jitter for reconnection attempts.

    A max_retries of None means retry forever.
    """

    base_delay: float = 1.0
    max_delay: float = 5.0
    max_retries: int | None = 5
    jitter: float = 0.1
    attempts: int = field(default=0, init=False)

    @property
    def exhausted(self) -> bool:
        """Check if no attempts remain."""
        return self.max_retries is not None and self.attempts >= self.max_retries

    def next_delay(self) -> float | None:
        """Calculate next delay with exponential backoff and jitter.

        Returns:
            Delay in seconds, or None if max retries exceeded
        """
        if self.exhausted:
            return None

        self.attempts += 1
        delay = min(self.base_delay * (2 ** (self.attempts - 1)), self.max_delay)

        jitter_range = delay * self.jitter
        delay += random.uniform(-jitter_range, jitter_range)

        return max(0.0, float(delay))

    def reset(self) -> None:
        """Reset attempt counter."""
        self.attempts = 0
