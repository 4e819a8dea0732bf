"""Unit tests for the Realtime facade and end-to-end channel behavior.

Runs the client against an in-memory server: subscription handshake, ordered
delivery, reconnect with resubscription, filtering and teardown.
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from insforge_realtime.adapters.transport.protocol import SUBSCRIBE_EVENT
from insforge_realtime.application.connection import ConnectionState
from insforge_realtime.application.realtime import Realtime
from insforge_realtime.config.schema import RealtimeConfig
from insforge_realtime.domain.model.events import (
    BroadcastEvent,
    ChangeEvent,
    EventKind,
    RawMessage,
)
from insforge_realtime.domain.state_machine.subscription import ChannelState
from insforge_realtime.exceptions import (
    AlreadySubscribingError,
    ChannelClosedError,
    ProtocolError,
    RealtimeConnectionError,
)


def _realtime(server: Any, config: RealtimeConfig, **kwargs: Any) -> Realtime:
    return Realtime(config, transport_factory=server.factory, **kwargs)


class TestChannelRegistry:
    """Tests for channel lookup and removal."""

    def test_same_name_same_instance(self, server: Any, config: RealtimeConfig) -> None:
        realtime = _realtime(server, config)
        assert realtime.channel("todos") is realtime.channel("todos")
        assert realtime.channel("todos") is not realtime.channel("notes")

    @pytest.mark.asyncio
    async def test_concurrent_lookups_share_instance(
        self, server: Any, config: RealtimeConfig
    ) -> None:
        realtime = _realtime(server, config)

        async def lookup() -> Any:
            await asyncio.sleep(0)
            return realtime.channel("x")

        channels = await asyncio.gather(*(lookup() for _ in range(10)))

        assert all(channel is channels[0] for channel in channels)
        assert list(realtime.channels) == ["x"]

    def test_empty_name_rejected(self, server: Any, config: RealtimeConfig) -> None:
        with pytest.raises(ValueError):
            _realtime(server, config).channel("  ")

    @pytest.mark.asyncio
    async def test_remove_channel(self, server: Any, config: RealtimeConfig) -> None:
        realtime = _realtime(server, config)
        channel = realtime.channel("a")
        realtime.channel("b")

        await realtime.remove_channel("a")
        assert channel.state is ChannelState.UNSUBSCRIBED
        assert list(realtime.channels) == ["b"]

        await realtime.remove_all_channels()
        assert realtime.channels == {}

    @pytest.mark.asyncio
    async def test_subscribed_channels(self, server: Any, config: RealtimeConfig) -> None:
        server.rejections["private"] = ("UNAUTHORIZED", "no")
        realtime = _realtime(server, config)
        await realtime.channel("public").on_broadcast("*", print).subscribe(
            block_until_subscribed=True
        )
        await realtime.channel("private").on_broadcast("*", print).subscribe()
        realtime.channel("idle")

        await asyncio.sleep(0.05)

        assert realtime.subscribed_channels() == ["public"]
        await realtime.close()


class TestLifecycle:
    """Tests for connecting and disconnecting the shared connection."""

    @pytest.mark.asyncio
    async def test_context_manager(self, server: Any, config: RealtimeConfig) -> None:
        states: list[ConnectionState] = []
        realtime = _realtime(server, config)
        realtime.on_state_change(states.append)

        async with realtime:
            assert realtime.is_connected
            assert realtime.socket_id == "sid-1"

        assert realtime.state is ConnectionState.DISCONNECTED
        assert realtime.socket_id is None
        assert states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTED,
        ]

    @pytest.mark.asyncio
    async def test_connect_after_disconnect_opens_new_connection(
        self, server: Any, config: RealtimeConfig
    ) -> None:
        realtime = _realtime(server, config)
        await realtime.connect()
        await realtime.disconnect()

        await realtime.connect()

        assert realtime.is_connected
        assert server.opens == 2
        await realtime.close()

    @pytest.mark.asyncio
    async def test_disconnect_closes_channels(self, server: Any, config: RealtimeConfig) -> None:
        realtime = _realtime(server, config)
        channel = realtime.channel("todos").on_insert("todos", print)
        await channel.subscribe(block_until_subscribed=True)

        await realtime.disconnect()

        assert channel.state is ChannelState.CLOSED
        assert realtime.channels == {}
        assert realtime.channel("todos") is not channel

    @pytest.mark.asyncio
    async def test_disconnect_during_blocking_subscribe(
        self, server: Any, config: RealtimeConfig, eventually: Any
    ) -> None:
        server.auto_ack = False
        realtime = _realtime(server, config.model_copy(update={"subscribe_timeout_s": 30.0}))
        channel = realtime.channel("todos").on_insert("todos", print)

        waiter = asyncio.create_task(channel.subscribe(block_until_subscribed=True))
        await eventually(lambda: channel.state is ChannelState.SUBSCRIBING)

        await realtime.disconnect()

        with pytest.raises(ChannelClosedError):
            await asyncio.wait_for(waiter, timeout=1.0)
        assert channel.state is ChannelState.CLOSED

    @pytest.mark.asyncio
    async def test_retries_exhausted_closes_channels(
        self, server: Any, config: RealtimeConfig, eventually: Any
    ) -> None:
        realtime = _realtime(server, config)
        errors: list[Exception] = []
        realtime.on_error(errors.append)
        channel = realtime.channel("todos").on_insert("todos", print)
        await channel.subscribe(block_until_subscribed=True)

        server.fail_opens = 10
        server.drop()
        await eventually(lambda: len(errors) == 1)

        assert isinstance(errors[0], RealtimeConnectionError)
        assert channel.state is ChannelState.CLOSED
        assert realtime.channels == {}
        assert realtime.state is ConnectionState.DISCONNECTED

        server.fail_opens = 0
        fresh = realtime.channel("todos").on_insert("todos", print)
        await fresh.subscribe(block_until_subscribed=True)
        assert fresh.is_subscribed
        await realtime.close()

    @pytest.mark.asyncio
    async def test_close_releases_rest_client(self, server: Any, config: RealtimeConfig) -> None:
        realtime = _realtime(server, config)
        api = realtime.api
        assert realtime.api is api

        await realtime.close()

        assert api._client.is_closed


class TestConnectionListeners:
    """Tests for Realtime.on, once and off."""

    @pytest.mark.asyncio
    async def test_listeners_survive_new_connections(
        self, server: Any, config: RealtimeConfig
    ) -> None:
        realtime = _realtime(server, config)
        seen: list[tuple[str, Any]] = []
        realtime.on("connect", lambda payload: seen.append(("connect", payload)))
        realtime.on("disconnect", lambda reason: seen.append(("disconnect", reason)))
        realtime.once("connect", lambda payload: seen.append(("first", payload)))

        await realtime.connect()
        await realtime.disconnect()
        await realtime.connect()

        assert seen == [
            ("connect", None),
            ("first", None),
            ("disconnect", "io client disconnect"),
            ("connect", None),
        ]
        await realtime.close()

    @pytest.mark.asyncio
    async def test_raw_messages_alongside_channel_listeners(
        self, server: Any, config: RealtimeConfig, eventually: Any
    ) -> None:
        realtime = _realtime(server, config)
        raw: list[RawMessage] = []
        delivered: list[BroadcastEvent] = []
        realtime.on("message", raw.append)
        channel = realtime.channel("chat").on_broadcast("message", delivered.append)
        await channel.subscribe(block_until_subscribed=True)

        server.push_broadcast("chat", "message", {"text": "hi"})
        server.push_broadcast("lobby", "message", {"text": "elsewhere"})
        await eventually(lambda: len(raw) == 2 and len(delivered) == 1)

        assert [message.channel for message in raw] == ["chat", "lobby"]
        assert delivered[0].payload == {"text": "hi"}
        await realtime.close()

    @pytest.mark.asyncio
    async def test_off_stops_delivery(
        self, server: Any, config: RealtimeConfig, eventually: Any
    ) -> None:
        realtime = _realtime(server, config)
        first: list[RawMessage] = []
        second: list[RawMessage] = []
        realtime.on("ping", first.append)
        realtime.on("ping", second.append)
        await realtime.connect()

        realtime.off("ping", first.append)
        server.push_broadcast("chat", "ping", {})
        await eventually(lambda: len(second) == 1)

        assert first == []
        realtime.off("ping")
        server.push_broadcast("chat", "ping", {})
        server.push_broadcast("chat", "pong", {})
        await asyncio.sleep(0.02)
        assert len(second) == 1
        await realtime.close()

    @pytest.mark.asyncio
    async def test_error_listener(
        self, server: Any, config: RealtimeConfig, eventually: Any
    ) -> None:
        realtime = _realtime(server, config)
        errors: list[Exception] = []
        realtime.on("error", errors.append)
        await realtime.connect()

        server.push("postgres_changes", {"channel": "todos", "data": {"type": "INSERT"}})
        await eventually(lambda: len(errors) == 1)

        assert isinstance(errors[0], ProtocolError)
        await realtime.close()


class TestEndToEnd:
    """Behavior of subscribed channels against the in-memory server."""

    @pytest.mark.asyncio
    async def test_idle_to_subscribed(self, server: Any, config: RealtimeConfig) -> None:
        realtime = _realtime(server, config)
        channel = realtime.channel("todos").on_insert("todos", print, schema="public")
        assert channel.state is ChannelState.IDLE

        await channel.subscribe(block_until_subscribed=True)

        assert channel.state is ChannelState.SUBSCRIBED
        assert realtime.subscribed_channels() == ["todos"]
        await realtime.close()

    @pytest.mark.asyncio
    async def test_register_after_subscribe_always_fails(
        self, server: Any, config: RealtimeConfig
    ) -> None:
        realtime = _realtime(server, config)
        channel = realtime.channel("todos").on_insert("todos", print)
        await channel.subscribe(block_until_subscribed=True)

        with pytest.raises(AlreadySubscribingError):
            channel.on_insert("todos", print)

        await channel.unsubscribe()
        with pytest.raises(AlreadySubscribingError):
            channel.on_delete("todos", print)
        await realtime.close()

    @pytest.mark.asyncio
    async def test_ordered_delivery_with_suspending_callbacks(
        self, server: Any, config: RealtimeConfig, eventually: Any
    ) -> None:
        realtime = _realtime(server, config)
        received: list[int] = []

        async def handler(event: BroadcastEvent) -> None:
            n = event.payload["n"]
            await asyncio.sleep(0.01 if n % 3 == 0 else 0)
            received.append(n)

        channel = realtime.channel("chat").on_broadcast("message", handler)
        await channel.subscribe(block_until_subscribed=True)

        for n in range(20):
            server.push_broadcast("chat", "message", {"n": n})
        await eventually(lambda: len(received) == 20)

        assert received == list(range(20))
        await realtime.close()

    @pytest.mark.asyncio
    async def test_reconnect_resubscribes_without_reregistration(
        self, server: Any, config: RealtimeConfig, eventually: Any
    ) -> None:
        tokens = iter(["token-1", "token-2"])
        realtime = _realtime(server, config, token_provider=lambda: next(tokens))
        received: list[ChangeEvent] = []
        channel = realtime.channel("todos").on_insert("todos", received.append)
        await channel.subscribe(block_until_subscribed=True)

        server.drop()
        await eventually(lambda: server.opens == 2 and channel.is_subscribed)

        subscribes = server.sent_events(SUBSCRIBE_EVENT)
        assert len(subscribes) == 2
        assert subscribes[0] == subscribes[1]
        assert server.tokens == ["token-1", "token-2"]
        assert realtime.channel("todos") is channel

        server.push_change("todos", "INSERT", "todos", record={"id": 7})
        await eventually(lambda: len(received) == 1)
        assert received[0].new_record == {"id": 7}
        await realtime.close()

    @pytest.mark.asyncio
    async def test_malformed_event_skipped(
        self, server: Any, config: RealtimeConfig, eventually: Any
    ) -> None:
        realtime = _realtime(server, config)
        errors: list[Exception] = []
        realtime.on_error(errors.append)
        received: list[ChangeEvent] = []
        channel = realtime.channel("todos").on_insert("todos", received.append)
        await channel.subscribe(block_until_subscribed=True)

        server.push("postgres_changes", {"channel": "todos", "data": {"type": "INSERT"}})
        server.push_change("todos", "INSERT", "todos", record={"id": 1})
        await eventually(lambda: len(received) == 1)

        assert received[0].new_record == {"id": 1}
        assert len(errors) == 1
        assert isinstance(errors[0], ProtocolError)
        await realtime.close()

    @pytest.mark.asyncio
    async def test_row_filter_scenario(
        self, server: Any, config: RealtimeConfig, eventually: Any
    ) -> None:
        realtime = _realtime(server, config)
        received: list[ChangeEvent] = []
        todos = realtime.channel("todos")
        todos.on_insert("todos", received.append, predicate="user_id=eq.U1")
        await todos.subscribe(block_until_subscribed=True)

        request = server.sent_events(SUBSCRIBE_EVENT)[0].data
        assert request["filters"] == ["postgres_changes:public:todos:INSERT:user_id=eq.U1"]

        server.push_change("todos", "INSERT", "todos", record={"id": 1, "user_id": "U2"})
        server.push_change("todos", "UPDATE", "todos", record={"id": 2, "user_id": "U1"})
        server.push_change("todos", "INSERT", "todos", record={"id": 3, "user_id": "U1"})
        await eventually(lambda: len(received) == 1)
        await asyncio.sleep(0.02)

        assert len(received) == 1
        event = received[0]
        assert event.kind is EventKind.INSERT
        assert event.table == "todos"
        assert event.new_record == {"id": 3, "user_id": "U1"}
        await realtime.close()
