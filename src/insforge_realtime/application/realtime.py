"""Realtime facade.

Realtime is the entry point application code touches: it owns the
connection lifecycle and the registry of channels, and lazily exposes the
REST management API.

Example:
    async with Realtime(RealtimeConfig(base_url=url, anon_key=key)) as realtime:
        todos = realtime.channel("todos")
        todos.on_insert("todos", handle_todo, predicate="user_id=eq.U1")
        await todos.subscribe(block_until_subscribed=True)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from insforge_realtime.adapters.rest.client import RealtimeRestClient
from insforge_realtime.adapters.transport.socketio_client import SocketIOTransport
from insforge_realtime.application.channel import Channel, ChannelOptions
from insforge_realtime.application.connection import (
    ConnectionState,
    ErrorCallback,
    RealtimeConnection,
    StateChangeCallback,
    TokenProvider,
    TransportFactory,
)
from insforge_realtime.application.emitter import EventEmitter
from insforge_realtime.domain.model.decoding import EventDecoder
from insforge_realtime.domain.state_machine.subscription import ChannelState

if TYPE_CHECKING:
    from collections.abc import Callable

    from insforge_realtime.config.schema import RealtimeConfig

logger = structlog.get_logger(__name__)


class Realtime:
    """Realtime client: one shared connection, many named channels."""

    def __init__(
        self,
        config: RealtimeConfig,
        *,
        token_provider: TokenProvider | None = None,
        transport_factory: TransportFactory | None = None,
        decoder: EventDecoder | None = None,
    ) -> None:
        """Initialize the client. Nothing is opened until first use.

        Args:
            config: Client configuration
            token_provider: Returns the current bearer token (sync or async);
                called at every connect, reconnect and REST request
            transport_factory: Builds a transport per connection attempt
                (defaults to SocketIOTransport)
            decoder: Shared decoder for typed listeners
        """
        self._config = config
        self._token_provider = token_provider
        self._transport_factory: TransportFactory = transport_factory or SocketIOTransport
        self._decoder = decoder or EventDecoder()
        self._connection: RealtimeConnection | None = None
        self._channels: dict[str, Channel] = {}
        self._state_callbacks: list[StateChangeCallback] = []
        self._error_callbacks: list[ErrorCallback] = []
        self._events = EventEmitter()
        self._api: RealtimeRestClient | None = None

    @property
    def config(self) -> RealtimeConfig:
        return self._config

    @property
    def state(self) -> ConnectionState:
        """Current state of the shared connection."""
        if self._connection is None:
            return ConnectionState.DISCONNECTED
        return self._connection.state

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def socket_id(self) -> str | None:
        if self._connection is None:
            return None
        return self._connection.sid

    @property
    def channels(self) -> dict[str, Channel]:
        """Snapshot of live channels by name."""
        return dict(self._channels)

    def subscribed_channels(self) -> list[str]:
        """Names of channels currently in SUBSCRIBED state."""
        return [
            name
            for name, channel in self._channels.items()
            if channel.state is ChannelState.SUBSCRIBED
        ]

    @property
    def api(self) -> RealtimeRestClient:
        """REST management API client, created on first access."""
        if self._api is None:
            self._api = RealtimeRestClient(self._config, token_provider=self._token_provider)
        return self._api

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def on_state_change(self, callback: StateChangeCallback) -> None:
        """Register a callback for connection state transitions."""
        self._state_callbacks.append(callback)
        if self._connection is not None:
            self._connection.on_state_change(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        """Register a callback for background errors no channel handled."""
        self._error_callbacks.append(callback)
        if self._connection is not None:
            self._connection.on_error(callback)

    def on(self, event: str, callback: Callable[[Any], Any]) -> None:
        """Listen to a server event on every channel, or to a connection event.

        Server events deliver a RawMessage. The reserved names connect,
        connect_error, disconnect and error deliver None, the failure
        message, the close reason and the exception respectively. Listeners
        survive reconnects and new connections.
        """
        self._events.on(event, callback)

    def once(self, event: str, callback: Callable[[Any], Any]) -> None:
        """Like on(), but the callback is removed after its first call."""
        self._events.once(event, callback)

    def off(self, event: str, callback: Callable[[Any], Any] | None = None) -> None:
        """Remove a listener, or every listener of the event when none is given."""
        self._events.off(event, callback)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _ensure_connection(self) -> RealtimeConnection:
        connection = self._connection
        if connection is None or connection.is_terminated:
            connection = RealtimeConnection(
                self._config,
                transport_factory=self._transport_factory,
                token_provider=self._token_provider,
                events=self._events,
            )
            for state_callback in self._state_callbacks:
                connection.on_state_change(state_callback)
            for error_callback in self._error_callbacks:
                connection.on_error(error_callback)
            self._connection = connection
        return connection

    async def connect(self) -> None:
        """Open the shared connection (idempotent).

        Raises:
            RealtimeConnectionError: If the handshake fails or times out
        """
        await self._ensure_connection().connect()

    async def disconnect(self) -> None:
        """Close the shared connection and every channel on it."""
        connection = self._connection
        if connection is None:
            return
        await connection.disconnect()
        for channel in list(self._channels.values()):
            await channel.close()
        self._channels.clear()

    async def close(self) -> None:
        """Disconnect and release the REST client."""
        await self.disconnect()
        if self._api is not None:
            await self._api.aclose()
            self._api = None

    async def __aenter__(self) -> Realtime:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Channel registry
    # ------------------------------------------------------------------

    def channel(
        self,
        name: str,
        *,
        receive_own_broadcasts: bool = False,
        acknowledge_broadcasts: bool = False,
    ) -> Channel:
        """Return the channel with this name, creating it if needed.

        Options only apply when the channel is created.
        """
        if not name or not name.strip():
            raise ValueError("Channel name must not be empty")

        existing = self._channels.get(name)
        if existing is not None and not existing.state.is_terminal:
            return existing

        channel = Channel(
            name,
            self._ensure_connection(),
            options=ChannelOptions(
                receive_own_broadcasts=receive_own_broadcasts,
                acknowledge_broadcasts=acknowledge_broadcasts,
            ),
            decoder=self._decoder,
            on_release=self._on_channel_released,
        )
        self._channels[name] = channel
        logger.debug("Channel created", channel=name)
        return channel

    def _on_channel_released(self, channel: Channel) -> None:
        if self._channels.get(channel.name) is channel:
            del self._channels[channel.name]

    async def remove_channel(self, name: str) -> None:
        """Unsubscribe a channel and drop it from the registry."""
        channel = self._channels.pop(name, None)
        if channel is not None:
            await channel.unsubscribe()

    async def remove_all_channels(self) -> None:
        for name in list(self._channels):
            await self.remove_channel(name)
