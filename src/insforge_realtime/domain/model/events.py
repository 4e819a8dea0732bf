"""Event domain models for realtime channels.

Two families of events travel over a channel:
- Change events: a row was inserted, updated or deleted in a watched table
- Broadcast events: application-defined messages published by name

Inbound frames are first parsed into an Envelope (raw, undecoded), routed to
the channel, matched against listeners and only then decoded into the typed
event a listener asked for.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class EventKind(Enum):
    """Kind of event carried by an envelope.

    Values match the wire names used by the change feed.
    """

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    BROADCAST = "BROADCAST"

    @classmethod
    def from_wire(cls, value: str) -> EventKind:
        """Parse a wire event name (case-insensitive).

        Raises:
            ValueError: If the name is not a known event kind
        """
        try:
            return cls(value.strip().upper())
        except ValueError:
            raise ValueError(f"Unknown event kind: {value!r}") from None

    @property
    def is_change(self) -> bool:
        """Check if this kind belongs to the database change feed."""
        return self is not EventKind.BROADCAST


@dataclass(frozen=True)
class MessageMeta:
    """Server-assigned metadata attached to broadcast messages."""

    channel: str
    message_id: str | None = None
    sender_type: str | None = None
    sender_id: str | None = None
    timestamp: str | None = None

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> MessageMeta:
        """Build from the camelCase meta object of a frame."""
        return cls(
            channel=str(data.get("channel", "")),
            message_id=data.get("messageId"),
            sender_type=data.get("senderType"),
            sender_id=data.get("senderId"),
            timestamp=data.get("timestamp"),
        )


@dataclass(frozen=True)
class Envelope:
    """An inbound event before decoding.

    Attributes:
        channel: Name of the channel the event was published on
        kind: Event kind
        schema: Database schema (change events only)
        table: Database table (change events only)
        new_record: Row after the change (insert/update)
        old_record: Row before the change (update/delete)
        event: Broadcast event name (broadcast only)
        payload: Broadcast payload (broadcast only)
        commit_timestamp: Database commit time as sent by the server
        meta: Broadcast metadata, when present
        received_at: Local receipt time
    """

    channel: str
    kind: EventKind
    schema: str | None = None
    table: str | None = None
    new_record: dict[str, Any] | None = None
    old_record: dict[str, Any] | None = None
    event: str | None = None
    payload: Any = None
    commit_timestamp: str | None = None
    meta: MessageMeta | None = None
    received_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def subject_record(self) -> dict[str, Any] | None:
        """The row a change event is about: the new row, or the old one for deletes."""
        if self.kind is EventKind.DELETE:
            return self.old_record
        return self.new_record


@dataclass(frozen=True)
class ChangeEvent:
    """A decoded database change event delivered to a change listener."""

    kind: EventKind
    schema: str
    table: str
    new_record: Any = None
    old_record: Any = None
    commit_timestamp: str | None = None
    received_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def record(self) -> Any:
        """Shortcut for the row the event is about."""
        return self.old_record if self.kind is EventKind.DELETE else self.new_record


@dataclass(frozen=True)
class BroadcastEvent:
    """A decoded broadcast message delivered to a broadcast listener."""

    channel: str
    event: str
    payload: Any = None
    meta: MessageMeta | None = None
    received_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class RawMessage:
    """An inbound server event as handed to connection-level listeners.

    Attributes:
        event: Event name carried by the message
        channel: Channel the event was published on
        data: The frame payload, undecoded
        meta: Broadcast metadata, when present
    """

    event: str
    channel: str
    data: dict[str, Any]
    meta: MessageMeta | None = None
    received_at: datetime = field(default_factory=lambda: datetime.now(UTC))
