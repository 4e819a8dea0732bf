"""Typed decoding of raw event payloads.

Listeners may ask for their rows or payloads as a specific shape (pydantic
model, dataclass, TypedDict or builtin container). Decoding goes through a
pydantic TypeAdapter built once per shape.
"""

from __future__ import annotations

from typing import Any

import structlog
from pydantic import PydanticUserError, TypeAdapter, ValidationError

from insforge_realtime.domain.model.events import (
    BroadcastEvent,
    ChangeEvent,
    Envelope,
    EventKind,
)
from insforge_realtime.exceptions import DecodeError

logger = structlog.get_logger(__name__)


class EventDecoder:
    """Decodes raw mappings into caller-chosen record shapes."""

    def __init__(self) -> None:
        self._adapters: dict[Any, TypeAdapter[Any]] = {}

    def adapter_for(self, shape: Any) -> TypeAdapter[Any]:
        """Return the cached TypeAdapter for a shape, building it on first use."""
        try:
            return self._adapters[shape]
        except KeyError:
            adapter: TypeAdapter[Any] = TypeAdapter(shape)
            self._adapters[shape] = adapter
            return adapter
        except TypeError:
            # Unhashable shapes cannot be cached
            return TypeAdapter(shape)

    def prepare(self, shape: Any | None) -> None:
        """Build the adapter for a shape up front.

        Raises:
            TypeError: If pydantic cannot generate a schema for the shape
        """
        if shape is None:
            return
        try:
            self.adapter_for(shape)
        except PydanticUserError as e:
            raise TypeError(f"Cannot decode events into {shape!r}: {e}") from e

    def decode(self, raw: Any, shape: Any | None) -> Any:
        """Decode a raw value into the given shape.

        Args:
            raw: Raw JSON-compatible value from the wire
            shape: Target type, or None to pass the value through

        Returns:
            The decoded value

        Raises:
            DecodeError: If the value does not fit the shape
        """
        if shape is None:
            return raw
        try:
            return self.adapter_for(shape).validate_python(raw)
        except ValidationError as e:
            raise DecodeError(shape, errors=list(e.errors())) from e

    def decode_change(self, envelope: Envelope, record_type: Any | None = None) -> ChangeEvent:
        """Decode a change envelope into a ChangeEvent.

        The row the event is about (new row for insert/update, old row for
        delete) must fit record_type. The old row of an update usually holds
        only key columns, so it is decoded when it fits and passed through
        as a mapping otherwise.

        Raises:
            DecodeError: If the subject row does not fit record_type
        """
        new_record: Any = None
        old_record: Any = None

        if envelope.kind is EventKind.DELETE:
            old_record = self.decode(envelope.old_record, record_type)
        else:
            new_record = self.decode(envelope.new_record, record_type)
            if envelope.kind is EventKind.UPDATE and envelope.old_record is not None:
                try:
                    old_record = self.decode(envelope.old_record, record_type)
                except DecodeError:
                    logger.debug(
                        "Partial old row passed through undecoded",
                        table=envelope.table,
                    )
                    old_record = envelope.old_record

        return ChangeEvent(
            kind=envelope.kind,
            schema=envelope.schema or "",
            table=envelope.table or "",
            new_record=new_record,
            old_record=old_record,
            commit_timestamp=envelope.commit_timestamp,
            received_at=envelope.received_at,
        )

    def decode_broadcast(
        self, envelope: Envelope, payload_type: Any | None = None
    ) -> BroadcastEvent:
        """Decode a broadcast envelope into a BroadcastEvent.

        Raises:
            DecodeError: If the payload does not fit payload_type
        """
        return BroadcastEvent(
            channel=envelope.channel,
            event=envelope.event or "",
            payload=self.decode(envelope.payload, payload_type),
            meta=envelope.meta,
            received_at=envelope.received_at,
        )
