from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import pytest

from insforge_realtime.adapters.transport.base import TransportClosedError
from insforge_realtime.adapters.transport.protocol import SUBSCRIBE_EVENT, Frame, ack_frame
from insforge_realtime.config.schema import RealtimeConfig, ReconnectConfig
from insforge_realtime.exceptions import RealtimeConnectionError


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    for item in items:
        item.add_marker(pytest.mark.unit)


class FakeTransport:
    """In-memory TransportPort driven by a FakeServer."""

    def __init__(self, server: FakeServer, config: RealtimeConfig) -> None:
        self._server = server
        self.config = config
        self.inbox: asyncio.Queue[Frame | None] = asyncio.Queue()
        self.closed = False
        self._sid: str | None = None

    @property
    def sid(self) -> str | None:
        return self._sid

    async def open(self, url: str, token: str | None) -> None:
        server = self._server
        server.opens += 1
        server.urls.append(url)
        server.tokens.append(token)
        if server.open_delay:
            await asyncio.sleep(server.open_delay)
        if server.fail_opens > 0:
            server.fail_opens -= 1
            self.closed = True
            raise RealtimeConnectionError("handshake refused")
        self._sid = f"sid-{server.opens}"

    async def send(self, frame: Frame) -> None:
        if self.closed or self._sid is None:
            raise TransportClosedError("fake transport closed")
        self._server.sent.append(frame)
        if frame.event == SUBSCRIBE_EVENT and frame.channel is not None:
            self._server.answer_subscribe(self, frame.channel)

    async def receive(self) -> Frame:
        frame = await self.inbox.get()
        if frame is None:
            self.closed = True
            raise TransportClosedError("connection lost")
        return frame

    async def close(self) -> None:
        self.closed = True
        self.inbox.put_nowait(None)


class FakeServer:
    """Scripted realtime server shared by every transport a test creates."""

    def __init__(self) -> None:
        self.transports: list[FakeTransport] = []
        self.sent: list[Frame] = []
        self.tokens: list[str | None] = []
        self.urls: list[str] = []
        self.opens = 0
        self.fail_opens = 0
        self.open_delay = 0.0
        self.auto_ack = True
        self.rejections: dict[str, tuple[str, str]] = {}

    def factory(self, config: RealtimeConfig) -> FakeTransport:
        transport = FakeTransport(self, config)
        self.transports.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.transports[-1]

    def answer_subscribe(self, transport: FakeTransport, channel: str) -> None:
        if not self.auto_ack:
            return
        rejection = self.rejections.get(channel)
        if rejection is None:
            response: dict[str, Any] = {"status": "ok"}
        else:
            code, message = rejection
            response = {"status": "error", "error": {"code": code, "message": message}}
        transport.inbox.put_nowait(ack_frame(channel, response))

    def ack(self, channel: str) -> None:
        self.current.inbox.put_nowait(ack_frame(channel, {"status": "ok"}))

    def push(self, event: str, data: dict[str, Any]) -> None:
        self.current.inbox.put_nowait(Frame(event, data))

    def push_change(
        self,
        channel: str,
        kind: str,
        table: str,
        *,
        record: dict[str, Any] | None = None,
        old_record: dict[str, Any] | None = None,
        schema: str = "public",
    ) -> None:
        body: dict[str, Any] = {"schema": schema, "table": table, "type": kind}
        if record is not None:
            body["record"] = record
        if old_record is not None:
            body["old_record"] = old_record
        self.push("postgres_changes", {"channel": channel, "data": body})

    def push_broadcast(self, channel: str, event: str, payload: Any) -> None:
        self.push(
            event,
            {
                "meta": {"channel": channel, "messageId": "m-1", "senderType": "user"},
                "payload": payload,
            },
        )

    def drop(self) -> None:
        """Simulate the server closing the link."""
        self.current.inbox.put_nowait(None)

    def sent_events(self, event: str) -> list[Frame]:
        return [frame for frame in self.sent if frame.event == event]


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest.fixture
def config() -> RealtimeConfig:
    return RealtimeConfig(
        base_url="https://test.insforge.app",
        anon_key="anon-key",
        connect_timeout_s=0.5,
        subscribe_timeout_s=0.5,
        send_timeout_s=0.05,
        reconnect=ReconnectConfig(base_delay_s=0.01, max_delay_s=0.02, max_attempts=3, jitter=0.0),
    )


@pytest.fixture
def eventually() -> Callable[..., Awaitable[None]]:
    """Poll a condition until it holds or a deadline passes."""

    async def _eventually(condition: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not condition():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.005)

    return _eventually
