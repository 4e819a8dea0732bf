"""Socket.IO transport built on python-socketio's AsyncClient.

The client's own reconnection is disabled: reconnect policy, token refresh
and resubscription belong to RealtimeConnection. Inbound events, including
subscription acks delivered through emit callbacks, are funnelled into one
queue so receive() yields them in arrival order.
"""

from __future__ import annotations

import asyncio
from functools import partial
from typing import TYPE_CHECKING, Any

import socketio
import structlog
from socketio.exceptions import ConnectionError as SocketIOConnectionError
from socketio.exceptions import SocketIOError

from insforge_realtime.adapters.transport.base import TransportClosedError
from insforge_realtime.adapters.transport.protocol import SUBSCRIBE_EVENT, Frame, ack_frame
from insforge_realtime.exceptions import RealtimeConnectionError

if TYPE_CHECKING:
    from collections.abc import Callable

    from insforge_realtime.config.schema import RealtimeConfig

logger = structlog.get_logger(__name__)


def _default_client_factory() -> socketio.AsyncClient:
    return socketio.AsyncClient(reconnection=False, logger=False, engineio_logger=False)


class SocketIOTransport:
    """TransportPort implementation over Socket.IO."""

    def __init__(
        self,
        config: RealtimeConfig,
        *,
        client_factory: Callable[[], socketio.AsyncClient] | None = None,
    ) -> None:
        self._config = config
        self._client_factory = client_factory or _default_client_factory
        self._client: socketio.AsyncClient | None = None
        self._inbox: asyncio.Queue[Frame | None] = asyncio.Queue()
        self._closed = False

    @property
    def sid(self) -> str | None:
        if self._client is None:
            return None
        return self._client.sid

    async def open(self, url: str, token: str | None) -> None:
        """Connect to the server, presenting the token in the handshake auth."""
        if self._client is not None:
            raise RealtimeConnectionError("Transport already opened")

        client = self._client_factory()
        client.on("disconnect", self._on_disconnect)
        client.on("*", self._on_any)
        self._client = client

        try:
            await client.connect(
                url,
                auth={"token": token} if token else None,
                transports=list(self._config.transport.transports),
                socketio_path=self._config.transport.path,
                wait_timeout=self._config.connect_timeout_s,
            )
        except SocketIOConnectionError as e:
            self._closed = True
            raise RealtimeConnectionError(f"Socket.IO handshake failed: {e}") from e

        logger.debug("Socket.IO connected", url=url, sid=client.sid)

    async def send(self, frame: Frame) -> None:
        client = self._client
        if client is None or self._closed or not client.connected:
            raise TransportClosedError("Transport is not open")

        if self._config.log_frames:
            logger.debug("Frame out", frame_event=frame.event, data=frame.data)

        callback = None
        if frame.event == SUBSCRIBE_EVENT and frame.channel is not None:
            callback = partial(self._on_subscribe_ack, frame.channel)

        try:
            await client.emit(frame.event, frame.data, callback=callback)
        except SocketIOError as e:
            raise TransportClosedError(f"Emit of '{frame.event}' failed: {e}") from e

    async def receive(self) -> Frame:
        if self._closed and self._inbox.empty():
            raise TransportClosedError("Transport closed")

        frame = await self._inbox.get()
        if frame is None:
            self._closed = True
            raise TransportClosedError("Connection lost")

        if self._config.log_frames:
            logger.debug("Frame in", frame_event=frame.event, data=frame.data)
        return frame

    async def close(self) -> None:
        if self._closed and (self._client is None or not self._client.connected):
            return
        self._closed = True

        client = self._client
        if client is not None and client.connected:
            try:
                await client.disconnect()
            except Exception as e:
                logger.warning("Error during Socket.IO disconnect", error=str(e))
        self._inbox.put_nowait(None)

    # ------------------------------------------------------------------
    # Socket.IO handlers
    # ------------------------------------------------------------------

    async def _on_any(self, event: str, *args: Any) -> None:
        data = args[0] if args else {}
        self._inbox.put_nowait(Frame(event, data))

    async def _on_disconnect(self, *args: Any) -> None:
        reason = args[0] if args else None
        logger.debug("Socket.IO disconnected", reason=str(reason) if reason else None)
        self._inbox.put_nowait(None)

    def _on_subscribe_ack(self, channel: str, *args: Any) -> None:
        response = args[0] if args else None
        self._inbox.put_nowait(ack_frame(channel, response))
