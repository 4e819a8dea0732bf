"""Realtime connection management.

RealtimeConnection owns the single live transport of a Realtime client.
It runs one supervisor task that receives frames and routes them to
channels, detects drops, reconnects with exponential backoff and asks the
affected channels to resubscribe. Every socket write goes through it under
one send lock.
"""

from __future__ import annotations

import asyncio
import inspect
import weakref
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog

from insforge_realtime.adapters.transport.base import ExponentialBackoff, TransportClosedError
from insforge_realtime.adapters.transport.protocol import Ack, ServerError, parse_inbound
from insforge_realtime.application.emitter import (
    CONNECT,
    CONNECT_ERROR,
    DISCONNECT,
    ERROR,
    RESERVED_EVENTS,
    EventEmitter,
    fire_and_forget,
)
from insforge_realtime.domain.model.events import EventKind, RawMessage
from insforge_realtime.domain.state_machine.subscription import ChannelState
from insforge_realtime.exceptions import (
    NotConnectedError,
    ProtocolError,
    RealtimeConnectionError,
    RealtimeServerError,
)

if TYPE_CHECKING:
    from insforge_realtime.adapters.transport.base import TransportPort
    from insforge_realtime.adapters.transport.protocol import Frame
    from insforge_realtime.application.channel import Channel
    from insforge_realtime.config.schema import RealtimeConfig
    from insforge_realtime.domain.model.events import Envelope

logger = structlog.get_logger(__name__)


class ConnectionState(Enum):
    """State of the realtime connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


# Returns the current bearer token, or None to fall back to the anon key
TokenProvider = Callable[[], Awaitable[str | None] | str | None]
TransportFactory = Callable[["RealtimeConfig"], "TransportPort"]
StateChangeCallback = Callable[[ConnectionState], Any]
ErrorCallback = Callable[[Exception], Any]


class RealtimeConnection:
    """One persistent, reconnecting realtime connection.

    Channels attach themselves to route inbound frames; the connection keeps
    only weak references to them. After disconnect() or an unrecoverable
    failure the instance is terminal and cannot be reconnected.
    """

    def __init__(
        self,
        config: RealtimeConfig,
        *,
        transport_factory: TransportFactory,
        token_provider: TokenProvider | None = None,
        events: EventEmitter | None = None,
    ) -> None:
        self._config = config
        self._events = events or EventEmitter()
        self._transport_factory = transport_factory
        self._token_provider = token_provider
        self._state = ConnectionState.DISCONNECTED
        self._transport: TransportPort | None = None
        self._connect_lock = asyncio.Lock()
        self._send_lock = asyncio.Lock()
        self._control_queue: asyncio.Queue[Frame] = asyncio.Queue(
            maxsize=config.control_queue_size
        )
        self._channels: weakref.WeakValueDictionary[str, Channel] = weakref.WeakValueDictionary()
        self._supervisor: asyncio.Task[None] | None = None
        self._opening: asyncio.Future[TransportPort] | None = None
        self._resubscribe_tasks: set[asyncio.Task[Any]] = set()
        self._callback_tasks: set[asyncio.Task[Any]] = set()
        self._state_callbacks: list[StateChangeCallback] = []
        self._error_callbacks: list[ErrorCallback] = []
        self._terminated = False
        self._disposed = False

        reconnect = config.reconnect
        self._backoff = ExponentialBackoff(
            base_delay=reconnect.base_delay_s,
            max_delay=reconnect.max_delay_s,
            max_retries=reconnect.max_attempts or None,
            jitter=reconnect.jitter,
        )

    @property
    def config(self) -> RealtimeConfig:
        return self._config

    @property
    def state(self) -> ConnectionState:
        """Get the current connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def is_terminated(self) -> bool:
        """Check if the connection was disconnected or gave up reconnecting."""
        return self._terminated

    @property
    def sid(self) -> str | None:
        """Server-assigned session id of the live transport."""
        if self._transport is None or not self.is_connected:
            return None
        return self._transport.sid

    @property
    def pending_control_frames(self) -> int:
        """Number of control frames waiting for a connection."""
        return self._control_queue.qsize()

    # ------------------------------------------------------------------
    # Channel routing table
    # ------------------------------------------------------------------

    def attach(self, channel: Channel) -> None:
        """Route frames for the channel's name to it."""
        self._channels[channel.name] = channel

    def detach(self, channel: Channel) -> None:
        if self._channels.get(channel.name) is channel:
            del self._channels[channel.name]

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def on_state_change(self, callback: StateChangeCallback) -> None:
        """Register a callback for connection state transitions."""
        self._state_callbacks.append(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        """Register a callback for background errors."""
        self._error_callbacks.append(callback)

    def report_error(self, error: Exception) -> None:
        """Surface a background error to the error callbacks, or log it."""
        listeners = self._events.emit(ERROR, error)
        if not self._error_callbacks:
            if listeners:
                return
            logger.warning(
                "Unhandled realtime error",
                error_type=type(error).__name__,
                error=str(error),
            )
            return
        for callback in list(self._error_callbacks):
            fire_and_forget(callback, error, tasks=self._callback_tasks, label="on_error")

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        from_state = self._state
        self._state = state
        logger.info("Connection state changed", from_state=from_state.value, to_state=state.value)
        for callback in list(self._state_callbacks):
            fire_and_forget(callback, state, tasks=self._callback_tasks, label="on_state_change")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the connection.

        Returns immediately when already connected or reconnecting. A call
        made while another connect() is in flight waits for that one.

        Raises:
            RealtimeConnectionError: If the handshake fails or times out, or
                the connection was already disconnected
        """
        if self._is_live():
            return

        async with self._connect_lock:
            if self._terminated:
                raise RealtimeConnectionError("Connection was disconnected; create a new one")
            if self._is_live():
                return

            self._set_state(ConnectionState.CONNECTING)
            logger.info("Connecting to realtime server", url=self._config.base_url)
            opening = asyncio.ensure_future(self._open_transport())
            self._opening = opening
            try:
                transport = await opening
            except asyncio.CancelledError:
                self._set_state(ConnectionState.DISCONNECTED)
                current = asyncio.current_task()
                if not self._terminated or (current is not None and current.cancelling()):
                    raise
                raise RealtimeConnectionError(
                    "Connection was disconnected while connecting"
                ) from None
            except RealtimeConnectionError as e:
                logger.error("Failed to connect", error=str(e))
                self._set_state(ConnectionState.DISCONNECTED)
                self._events.emit(CONNECT_ERROR, str(e))
                raise
            finally:
                self._opening = None

            if self._terminated:
                await self._close_quietly(transport)
                self._set_state(ConnectionState.DISCONNECTED)
                raise RealtimeConnectionError("Connection was disconnected while connecting")

            self._transport = transport
            self._backoff.reset()
            self._set_state(ConnectionState.CONNECTED)
            logger.info("Connected to realtime server", sid=transport.sid)
            self._supervisor = asyncio.create_task(self._run(), name="realtime-supervisor")
            self._events.emit(CONNECT, None)

        await self._flush_control_queue()

    def _is_live(self) -> bool:
        if self._state is ConnectionState.CONNECTED:
            return True
        return self._supervisor is not None and not self._supervisor.done()

    async def disconnect(self) -> None:
        """Close the connection for good.

        Cancels an in-flight connect, the supervisor and any reconnect in
        progress. Then closes the transport, drops queued control frames and
        closes every channel.
        """
        if self._disposed:
            return
        self._disposed = True
        self._terminated = True
        logger.info("Disconnecting from realtime server")
        was_connected = self._state is ConnectionState.CONNECTED

        opening = self._opening
        if opening is not None:
            opening.cancel()
            await asyncio.gather(opening, return_exceptions=True)

        supervisor, self._supervisor = self._supervisor, None
        if supervisor is not None and supervisor is not asyncio.current_task():
            supervisor.cancel()
            await asyncio.gather(supervisor, return_exceptions=True)

        tasks = list(self._resubscribe_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self._close_transport()
        self._drain_control_queue()
        await self._close_channels()
        self._set_state(ConnectionState.DISCONNECTED)
        if was_connected:
            self._events.emit(DISCONNECT, "io client disconnect")

    async def _fail(self, error: RealtimeConnectionError) -> None:
        """Give up after an unrecoverable failure."""
        logger.error("Realtime connection failed permanently", error=str(error))
        self._terminated = True
        self._drain_control_queue()
        await self._close_channels()
        self._set_state(ConnectionState.DISCONNECTED)
        self.report_error(error)

    async def _close_channels(self) -> None:
        for channel in list(self._channels.values()):
            try:
                await channel.close()
            except Exception as e:
                logger.warning("Error closing channel", channel=channel.name, error=str(e))

    # ------------------------------------------------------------------
    # Transport handling
    # ------------------------------------------------------------------

    async def _resolve_token(self) -> str | None:
        token: str | None = None
        if self._token_provider is not None:
            result = self._token_provider()
            if inspect.isawaitable(result):
                result = await result
            token = result
        return token or self._config.anon_key

    async def _open_transport(self) -> TransportPort:
        """Create a transport and complete the handshake with a fresh token."""
        transport = self._transport_factory(self._config)
        timeout = self._config.connect_timeout_s
        try:
            token = await self._resolve_token()
            await asyncio.wait_for(transport.open(self._config.base_url, token), timeout=timeout)
        except asyncio.CancelledError:
            await self._close_quietly(transport)
            raise
        except TimeoutError as e:
            await self._close_quietly(transport)
            raise RealtimeConnectionError(f"Handshake did not complete within {timeout}s") from e
        except RealtimeConnectionError:
            await self._close_quietly(transport)
            raise
        except Exception as e:
            await self._close_quietly(transport)
            raise RealtimeConnectionError(f"Failed to connect: {e}") from e
        return transport

    async def _close_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            await self._close_quietly(transport)

    async def _close_quietly(self, transport: TransportPort) -> None:
        try:
            await transport.close()
        except Exception as e:
            logger.warning("Error closing transport", error=str(e))

    # ------------------------------------------------------------------
    # Supervisor: receive, route, recover
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            transport = self._transport
            if transport is None:
                return
            try:
                frame = await transport.receive()
            except Exception as e:
                if not await self._recover(str(e)):
                    return
                continue

            try:
                self._route(frame)
            except ProtocolError as e:
                logger.warning("Malformed frame skipped", frame_event=frame.event, error=str(e))
                self.report_error(e)
            except Exception as e:
                logger.exception("Frame routing failed", frame_event=frame.event, error=str(e))
                self.report_error(e)

    def _route(self, frame: Frame) -> None:
        message = parse_inbound(frame)

        if isinstance(message, Ack):
            channel = self._channels.get(message.channel)
            if channel is None:
                logger.debug("Ack for unknown channel ignored", channel=message.channel)
                return
            logger.info(
                "Subscription ack received",
                channel=message.channel,
                ok=message.ok,
                error_code=message.error_code,
            )
            channel.handle_ack(message)

        elif isinstance(message, ServerError):
            error = RealtimeServerError(message.code, message.message, message.channel)
            logger.warning(
                "Server reported error",
                channel=message.channel,
                code=message.code,
                message=message.message,
            )
            target = self._channels.get(message.channel) if message.channel else None
            if target is not None:
                target.report_error(error)
            else:
                self.report_error(error)

        else:
            self._emit_raw(frame, message)
            channel = self._channels.get(message.channel)
            if channel is None:
                logger.debug("Event for unknown channel dropped", channel=message.channel)
                return
            channel.deliver(message)

    def _emit_raw(self, frame: Frame, message: Envelope) -> None:
        """Hand an inbound event to connection-level listeners.

        Listeners of the frame's event name are called first, then those of
        the inner name when it differs. Reserved connection events are never
        emitted from server frames.
        """
        if message.kind is EventKind.BROADCAST:
            name = message.event or frame.event
        else:
            name = str(frame.data.get("event") or message.kind.value)
        raw = RawMessage(event=name, channel=message.channel, data=frame.data, meta=message.meta)
        for event_name in dict.fromkeys((frame.event, name)):
            if event_name not in RESERVED_EVENTS:
                self._events.emit(event_name, raw)

    async def _recover(self, reason: str) -> bool:
        """Handle an unsolicited drop.

        Returns:
            True once reconnected, False if the connection is now terminal
        """
        logger.warning("Connection lost", reason=reason)
        await self._close_transport()
        if self._terminated:
            return False
        self._events.emit(DISCONNECT, reason)

        self._set_state(ConnectionState.CONNECTING)
        for channel in list(self._channels.values()):
            if channel.state in (ChannelState.SUBSCRIBING, ChannelState.SUBSCRIBED):
                channel.mark_awaiting_resubscription()

        if not self._config.reconnect.enabled:
            await self._fail(RealtimeConnectionError(f"Connection lost: {reason}"))
            return False

        self._backoff.reset()
        while True:
            delay = self._backoff.next_delay()
            if delay is None:
                await self._fail(
                    RealtimeConnectionError(
                        f"Reconnection failed after {self._backoff.attempts} attempts"
                    )
                )
                return False

            logger.info(
                "Reconnecting after delay",
                delay_s=round(delay, 3),
                attempt=self._backoff.attempts,
            )
            await asyncio.sleep(delay)
            try:
                transport = await self._open_transport()
            except RealtimeConnectionError as e:
                logger.warning(
                    "Reconnection attempt failed",
                    attempt=self._backoff.attempts,
                    error=str(e),
                )
                self._events.emit(CONNECT_ERROR, str(e))
                continue
            break

        self._transport = transport
        self._backoff.reset()
        self._set_state(ConnectionState.CONNECTED)
        logger.info("Reconnected to realtime server", sid=transport.sid)
        self._events.emit(CONNECT, None)

        await self._flush_control_queue()
        for channel in list(self._channels.values()):
            if channel.awaiting_resubscription:
                task = asyncio.create_task(
                    channel.resubscribe(), name=f"resubscribe:{channel.name}"
                )
                self._resubscribe_tasks.add(task)
                task.add_done_callback(self._resubscribe_tasks.discard)
        return True

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def _write(self, frame: Frame) -> None:
        async with self._send_lock:
            transport = self._transport
            if transport is None or self._state is not ConnectionState.CONNECTED:
                raise NotConnectedError("Not connected to the realtime server")
            await transport.send(frame)

    async def send_control(self, frame: Frame) -> None:
        """Send a subscribe/unsubscribe frame, queueing it while disconnected.

        Raises:
            NotConnectedError: If the connection is terminal, or the queue
                stays full for longer than send_timeout_s
        """
        if self._terminated:
            raise NotConnectedError("Connection was disconnected")

        if self.is_connected and self._control_queue.empty():
            try:
                await self._write(frame)
                return
            except (NotConnectedError, TransportClosedError) as e:
                logger.debug("Control frame deferred", frame_event=frame.event, error=str(e))

        try:
            self._control_queue.put_nowait(frame)
        except asyncio.QueueFull:
            timeout = self._config.send_timeout_s
            try:
                await asyncio.wait_for(self._control_queue.put(frame), timeout=timeout)
            except TimeoutError as e:
                raise NotConnectedError(
                    f"Control queue full ({self._config.control_queue_size}) for {timeout}s"
                ) from e

        logger.debug(
            "Control frame queued",
            frame_event=frame.event,
            channel=frame.channel,
            queued=self._control_queue.qsize(),
        )
        if self.is_connected:
            await self._flush_control_queue()

    async def send_data(self, frame: Frame) -> None:
        """Send an application frame. Never queued or retried.

        Raises:
            NotConnectedError: If the connection is not currently usable
        """
        if not self.is_connected:
            raise NotConnectedError("Not connected to the realtime server")
        try:
            await self._write(frame)
        except TransportClosedError as e:
            raise NotConnectedError(f"Connection lost while sending: {e}") from e

    async def _flush_control_queue(self) -> None:
        async with self._send_lock:
            while not self._control_queue.empty():
                transport = self._transport
                if transport is None or self._state is not ConnectionState.CONNECTED:
                    return
                frame = self._control_queue.get_nowait()
                try:
                    await transport.send(frame)
                except TransportClosedError as e:
                    logger.warning(
                        "Queued control frame dropped",
                        frame_event=frame.event,
                        channel=frame.channel,
                        error=str(e),
                    )
                    return
                logger.debug("Queued control frame sent", frame_event=frame.event, channel=frame.channel)

    def _drain_control_queue(self) -> None:
        dropped = 0
        while not self._control_queue.empty():
            self._control_queue.get_nowait()
            dropped += 1
        if dropped:
            logger.info("Queued control frames dropped", count=dropped)
