"""Unit tests for frame building, parsing and the backoff policy."""

from __future__ import annotations

from typing import Any

import pytest

from insforge_realtime.adapters.transport.base import ExponentialBackoff
from insforge_realtime.adapters.transport.protocol import (
    ERROR_EVENT,
    PUBLISH_EVENT,
    SUBSCRIBE_EVENT,
    SUBSCRIBED_EVENT,
    UNSUBSCRIBE_EVENT,
    Ack,
    Frame,
    ServerError,
    ack_frame,
    parse_inbound,
    publish_frame,
    subscribe_frame,
    unsubscribe_frame,
)
from insforge_realtime.domain.model.events import Envelope, EventKind, MessageMeta
from insforge_realtime.exceptions import ProtocolError


class TestOutboundFrames:
    """Tests for client-to-server frames."""

    def test_subscribe_frame(self) -> None:
        frame = subscribe_frame(
            "todos",
            ["postgres_changes:public:todos:INSERT:*", "broadcast:ping"],
            [{"event": "INSERT", "schema": "public", "table": "todos"}],
            receive_own_broadcasts=True,
        )
        assert frame.event == SUBSCRIBE_EVENT
        assert frame.is_control
        assert frame.channel == "todos"
        assert frame.data == {
            "channel": "todos",
            "filters": ["postgres_changes:public:todos:INSERT:*", "broadcast:ping"],
            "config": {
                "broadcast": {"ack": False, "self": True},
                "postgres_changes": [{"event": "INSERT", "schema": "public", "table": "todos"}],
            },
        }

    def test_subscribe_frame_without_changes(self) -> None:
        frame = subscribe_frame("chat", ["broadcast:*"], [])
        assert "postgres_changes" not in frame.data["config"]

    def test_unsubscribe_and_publish(self) -> None:
        assert unsubscribe_frame("chat") == Frame(UNSUBSCRIBE_EVENT, {"channel": "chat"})
        publish = publish_frame("chat", "message", {"text": "hi"})
        assert publish.event == PUBLISH_EVENT
        assert not publish.is_control
        assert publish.data == {"channel": "chat", "event": "message", "payload": {"text": "hi"}}

    def test_ack_frame_from_response(self) -> None:
        frame = ack_frame("chat", {"ok": True})
        assert frame == Frame(SUBSCRIBED_EVENT, {"ok": True, "channel": "chat"})

    @pytest.mark.parametrize("response", [None, "ok", {}])
    def test_ack_frame_from_empty_response_is_error(self, response: Any) -> None:
        ack = parse_inbound(ack_frame("chat", response))
        assert isinstance(ack, Ack)
        assert not ack.ok
        assert ack.error_code == "SUBSCRIBE_FAILED"


class TestParseControl:
    """Tests for acks and server errors."""

    def test_ack_ok(self) -> None:
        frame = Frame(SUBSCRIBED_EVENT, {"channel": "chat", "status": "ok"})
        assert parse_inbound(frame) == Ack(channel="chat", ok=True)

    def test_ack_rejected(self) -> None:
        frame = Frame(
            SUBSCRIBED_EVENT,
            {
                "channel": "chat",
                "status": "error",
                "error": {"code": "UNAUTHORIZED", "message": "no access"},
            },
        )
        assert parse_inbound(frame) == Ack(
            channel="chat", ok=False, error_code="UNAUTHORIZED", error_message="no access"
        )

    def test_ack_without_status(self) -> None:
        with pytest.raises(ProtocolError, match="no status"):
            parse_inbound(Frame(SUBSCRIBED_EVENT, {"channel": "chat"}))

    def test_ack_without_channel(self) -> None:
        with pytest.raises(ProtocolError, match="channel"):
            parse_inbound(Frame(SUBSCRIBED_EVENT, {"status": "ok"}))

    def test_server_error(self) -> None:
        frame = Frame(ERROR_EVENT, {"channel": "chat", "code": "RATE_LIMITED", "message": "slow"})
        assert parse_inbound(frame) == ServerError(
            code="RATE_LIMITED", message="slow", channel="chat"
        )

    def test_server_error_defaults(self) -> None:
        error = parse_inbound(Frame(ERROR_EVENT, {}))
        assert isinstance(error, ServerError)
        assert error.code == "UNKNOWN"
        assert error.channel is None


class TestParseChange:
    """Tests for database change frames."""

    def test_nested_insert(self) -> None:
        frame = Frame(
            "postgres_changes",
            {
                "channel": "todos",
                "data": {
                    "schema": "public",
                    "table": "todos",
                    "type": "INSERT",
                    "record": {"id": 1},
                    "commit_timestamp": "2024-01-01T00:00:00Z",
                },
            },
        )
        envelope = parse_inbound(frame)
        assert isinstance(envelope, Envelope)
        assert envelope.channel == "todos"
        assert envelope.kind is EventKind.INSERT
        assert (envelope.schema, envelope.table) == ("public", "todos")
        assert envelope.new_record == {"id": 1}
        assert envelope.commit_timestamp == "2024-01-01T00:00:00Z"

    def test_flat_delete_with_meta_channel(self) -> None:
        frame = Frame(
            "postgres_changes",
            {
                "meta": {"channel": "todos"},
                "schema": "public",
                "table": "todos",
                "eventType": "delete",
                "old_record": {"id": 1},
            },
        )
        envelope = parse_inbound(frame)
        assert isinstance(envelope, Envelope)
        assert envelope.channel == "todos"
        assert envelope.kind is EventKind.DELETE
        assert envelope.old_record == {"id": 1}

    @pytest.mark.parametrize(
        "data",
        [
            {"data": {"schema": "public", "table": "t", "type": "INSERT", "record": {}}},
            {"channel": "c", "data": {"schema": "public", "table": "t", "record": {}}},
            {"channel": "c", "data": {"schema": "public", "table": "t", "type": "TRUNCATE"}},
            {"channel": "c", "data": {"schema": "public", "table": "t", "type": "BROADCAST"}},
            {"channel": "c", "data": {"table": "t", "type": "INSERT", "record": {}}},
            {"channel": "c", "data": {"schema": "public", "table": "t", "type": "INSERT"}},
            {"channel": "c", "data": {"schema": "public", "table": "t", "type": "DELETE"}},
            {"channel": "c", "data": {"schema": "p", "table": "t", "type": "INSERT", "record": 1}},
            {"channel": "c", "data": "not an object"},
        ],
    )
    def test_malformed_change(self, data: dict[str, Any]) -> None:
        with pytest.raises(ProtocolError):
            parse_inbound(Frame("postgres_changes", data))


class TestParseBroadcast:
    """Tests for broadcast frames."""

    def test_payload_with_meta(self) -> None:
        frame = Frame(
            "message",
            {
                "meta": {"channel": "chat", "messageId": "m-1", "senderType": "user"},
                "payload": {"text": "hi"},
            },
        )
        envelope = parse_inbound(frame)
        assert isinstance(envelope, Envelope)
        assert envelope.kind is EventKind.BROADCAST
        assert envelope.channel == "chat"
        assert envelope.event == "message"
        assert envelope.payload == {"text": "hi"}
        assert envelope.meta == MessageMeta(channel="chat", message_id="m-1", sender_type="user")

    def test_flat_payload_excludes_reserved_keys(self) -> None:
        frame = Frame("cursor", {"meta": {"channel": "doc"}, "x": 1, "y": 2})
        envelope = parse_inbound(frame)
        assert isinstance(envelope, Envelope)
        assert envelope.payload == {"x": 1, "y": 2}

    def test_explicit_event_name(self) -> None:
        frame = Frame("broadcast", {"channel": "chat", "event": "typing", "payload": None})
        envelope = parse_inbound(frame)
        assert isinstance(envelope, Envelope)
        assert envelope.event == "typing"
        assert envelope.meta is None

    def test_missing_channel(self) -> None:
        with pytest.raises(ProtocolError, match="missing 'channel'"):
            parse_inbound(Frame("message", {"payload": {}}))

    def test_non_object_data(self) -> None:
        with pytest.raises(ProtocolError, match="not an object"):
            parse_inbound(Frame("message", ["a"]))  # type: ignore[arg-type]


class TestExponentialBackoff:
    """Tests for the reconnection backoff policy."""

    def test_delays_double_up_to_ceiling(self) -> None:
        backoff = ExponentialBackoff(base_delay=1.0, max_delay=5.0, max_retries=5, jitter=0.0)
        delays = [backoff.next_delay() for _ in range(5)]
        assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]
        assert backoff.exhausted
        assert backoff.next_delay() is None

    def test_jitter_stays_in_range(self) -> None:
        backoff = ExponentialBackoff(base_delay=1.0, max_delay=5.0, max_retries=None, jitter=0.1)
        for _ in range(20):
            backoff.reset()
            delay = backoff.next_delay()
            assert delay is not None
            assert 0.9 <= delay <= 1.1

    def test_unlimited_retries(self) -> None:
        backoff = ExponentialBackoff(base_delay=0.1, max_delay=0.1, max_retries=None, jitter=0.0)
        for _ in range(100):
            assert backoff.next_delay() == 0.1
        assert not backoff.exhausted

    def test_reset(self) -> None:
        backoff = ExponentialBackoff(max_retries=1, jitter=0.0)
        backoff.next_delay()
        assert backoff.exhausted
        backoff.reset()
        assert backoff.attempts == 0
        assert backoff.next_delay() == 1.0
