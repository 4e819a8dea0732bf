"""Realtime message protocol.

Frames are (event name, JSON object) pairs carried by the transport.

Client to server:
    realtime:subscribe    {channel, filters, config}
    realtime:unsubscribe  {channel}
    realtime:publish      {channel, event, payload}

Server to client:
    realtime:subscribed   {channel, status, error?}   (also the subscribe ack)
    realtime:error        {channel?, code, message}
    postgres_changes      {channel | meta.channel, data?: {schema, table, type, record, old_record}}
    <any other event>     broadcast {meta: {channel, ...}, event?, payload? | ...}
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from insforge_realtime.domain.model.events import Envelope, EventKind, MessageMeta
from insforge_realtime.exceptions import ProtocolError

SUBSCRIBE_EVENT = "realtime:subscribe"
UNSUBSCRIBE_EVENT = "realtime:unsubscribe"
PUBLISH_EVENT = "realtime:publish"
SUBSCRIBED_EVENT = "realtime:subscribed"
ERROR_EVENT = "realtime:error"
CHANGE_EVENT = "postgres_changes"

CONTROL_EVENTS = frozenset({SUBSCRIBE_EVENT, UNSUBSCRIBE_EVENT})

# Keys of a broadcast frame that are never part of the payload
_BROADCAST_RESERVED_KEYS = frozenset({"meta", "channel", "event"})


@dataclass(frozen=True)
class Frame:
    """One message on the transport."""

    event: str
    data: dict[str, Any]

    @property
    def is_control(self) -> bool:
        """Subscribe/unsubscribe frames may be queued while disconnected."""
        return self.event in CONTROL_EVENTS

    @property
    def channel(self) -> str | None:
        value = self.data.get("channel")
        return value if isinstance(value, str) else None


@dataclass(frozen=True)
class Ack:
    """Server answer to a subscription request."""

    channel: str
    ok: bool
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class ServerError:
    """Unsolicited error pushed by the server."""

    code: str
    message: str
    channel: str | None = None


Inbound = Ack | ServerError | Envelope


# =============================================================================
# OUTBOUND
# =============================================================================


def subscribe_frame(
    channel: str,
    tokens: list[str],
    change_configs: list[dict[str, str]],
    *,
    receive_own_broadcasts: bool = False,
    acknowledge_broadcasts: bool = False,
) -> Frame:
    """Build the single subscription request for a channel.

    Args:
        channel: Channel name
        tokens: Compiled filter tokens of every registered listener
        change_configs: Per-filter change-feed entries for the server
        receive_own_broadcasts: Echo this client's broadcasts back to it
        acknowledge_broadcasts: Ask the server to acknowledge broadcasts
    """
    config: dict[str, Any] = {
        "broadcast": {"ack": acknowledge_broadcasts, "self": receive_own_broadcasts},
    }
    if change_configs:
        config["postgres_changes"] = list(change_configs)
    return Frame(
        SUBSCRIBE_EVENT,
        {"channel": channel, "filters": list(tokens), "config": config},
    )


def unsubscribe_frame(channel: str) -> Frame:
    return Frame(UNSUBSCRIBE_EVENT, {"channel": channel})


def publish_frame(channel: str, event: str, payload: Any) -> Frame:
    return Frame(PUBLISH_EVENT, {"channel": channel, "event": event, "payload": payload})


def ack_frame(channel: str, response: Any) -> Frame:
    """Turn the response of an acknowledged subscribe into an inbound frame."""
    data = dict(response) if isinstance(response, dict) else {}
    data.setdefault("channel", channel)
    if "status" not in data and "ok" not in data:
        data["status"] = "error"
        data.setdefault("error", {"code": "SUBSCRIBE_FAILED", "message": "Empty acknowledgment"})
    return Frame(SUBSCRIBED_EVENT, data)


# =============================================================================
# INBOUND
# =============================================================================


def parse_inbound(frame: Frame) -> Inbound:
    """Classify and parse one inbound frame.

    Raises:
        ProtocolError: If the frame does not follow the message schema
    """
    if not isinstance(frame.data, dict):
        kind = type(frame.data).__name__
        raise ProtocolError(f"Frame '{frame.event}' carries {kind}, not an object")

    if frame.event == SUBSCRIBED_EVENT:
        return _parse_ack(frame.data)
    if frame.event == ERROR_EVENT:
        return _parse_error(frame.data)
    if frame.event == CHANGE_EVENT:
        return _parse_change(frame.data)
    return _parse_broadcast(frame.event, frame.data)


def _require_str(data: dict[str, Any], key: str, what: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ProtocolError(f"{what} is missing '{key}'")
    return value


def _optional_record(data: dict[str, Any], *keys: str) -> dict[str, Any] | None:
    for key in keys:
        value = data.get(key)
        if value is None:
            continue
        if not isinstance(value, dict):
            raise ProtocolError(f"Change event '{key}' must be an object")
        return value
    return None


def _parse_ack(data: dict[str, Any]) -> Ack:
    channel = _require_str(data, "channel", "Subscription ack")

    if "status" in data:
        ok = data["status"] == "ok"
    elif "ok" in data:
        ok = bool(data["ok"])
    else:
        raise ProtocolError(f"Subscription ack for '{channel}' has no status")

    if ok:
        return Ack(channel=channel, ok=True)

    error = data.get("error")
    error = error if isinstance(error, dict) else {}
    return Ack(
        channel=channel,
        ok=False,
        error_code=str(error.get("code") or "SUBSCRIBE_FAILED"),
        error_message=str(error.get("message") or "Subscription failed"),
    )


def _parse_error(data: dict[str, Any]) -> ServerError:
    channel = data.get("channel")
    return ServerError(
        code=str(data.get("code") or "UNKNOWN"),
        message=str(data.get("message") or "Unknown error"),
        channel=channel if isinstance(channel, str) else None,
    )


def _channel_of(data: dict[str, Any], *sources: dict[str, Any]) -> str | None:
    for source in (data, *sources):
        value = source.get("channel")
        if isinstance(value, str) and value:
            return value
    return None


def _parse_change(data: dict[str, Any]) -> Envelope:
    body = data.get("data", data)
    if not isinstance(body, dict):
        raise ProtocolError("Change event 'data' must be an object")

    meta = data.get("meta") if isinstance(data.get("meta"), dict) else {}
    channel = _channel_of(data, meta, body)
    if channel is None:
        raise ProtocolError("Change event is missing 'channel'")

    raw_kind = body.get("type", body.get("kind", body.get("eventType")))
    if not isinstance(raw_kind, str):
        raise ProtocolError("Change event is missing 'type'")
    try:
        kind = EventKind.from_wire(raw_kind)
    except ValueError as e:
        raise ProtocolError(str(e)) from e
    if not kind.is_change:
        raise ProtocolError(f"Change event has non-change type {raw_kind!r}")

    schema = _require_str(body, "schema", "Change event")
    table = _require_str(body, "table", "Change event")
    new_record = _optional_record(body, "record", "new_record")
    old_record = _optional_record(body, "old_record")

    if kind is EventKind.DELETE and old_record is None:
        raise ProtocolError("DELETE event is missing 'old_record'")
    if kind is not EventKind.DELETE and new_record is None:
        raise ProtocolError(f"{kind.value} event is missing 'record'")

    commit_timestamp = body.get("commit_timestamp")
    return Envelope(
        channel=channel,
        kind=kind,
        schema=schema,
        table=table,
        new_record=new_record,
        old_record=old_record,
        commit_timestamp=str(commit_timestamp) if commit_timestamp is not None else None,
    )


def _parse_broadcast(event: str, data: dict[str, Any]) -> Envelope:
    raw_meta = data.get("meta")
    meta = MessageMeta.from_wire(raw_meta) if isinstance(raw_meta, dict) else None

    channel = _channel_of(data, raw_meta if isinstance(raw_meta, dict) else {})
    if channel is None:
        raise ProtocolError(f"Broadcast '{event}' is missing 'channel'")

    name = data.get("event")
    if not isinstance(name, str) or not name:
        name = event

    if "payload" in data:
        payload = data["payload"]
    else:
        payload = {k: v for k, v in data.items() if k not in _BROADCAST_RESERVED_KEYS}

    return Envelope(
        channel=channel,
        kind=EventKind.BROADCAST,
        event=name,
        payload=payload,
        meta=meta,
    )
