"""Realtime channels.

A Channel is a named subscription scope multiplexed over the shared
RealtimeConnection. Listeners are registered first, then subscribe() sends
one request carrying every compiled filter. Once the server acknowledges,
inbound events are dispatched by a single per-channel task, so callbacks
run in receipt order and never concurrently within one channel.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel

from insforge_realtime.adapters.transport.protocol import (
    publish_frame,
    subscribe_frame,
    unsubscribe_frame,
)
from insforge_realtime.application.connection import ConnectionState
from insforge_realtime.application.emitter import fire_and_forget
from insforge_realtime.domain.model.decoding import EventDecoder
from insforge_realtime.domain.model.events import EventKind
from insforge_realtime.domain.rules.change_filter import ChangeFilter, Predicate
from insforge_realtime.domain.state_machine.subscription import (
    ChannelState,
    ChannelTrigger,
    next_state,
)
from insforge_realtime.exceptions import (
    AlreadySubscribingError,
    ChannelClosedError,
    DecodeError,
    InvalidFilterError,
    RealtimeError,
    ResubscriptionFailedError,
    SubscriptionRejectedError,
    SubscriptionTimeoutError,
)

if TYPE_CHECKING:
    from insforge_realtime.adapters.transport.protocol import Ack, Frame
    from insforge_realtime.application.connection import RealtimeConnection
    from insforge_realtime.domain.model.events import BroadcastEvent, ChangeEvent, Envelope

logger = structlog.get_logger(__name__)

ALL_EVENTS = "*"

ChangeCallback = Callable[["ChangeEvent"], Any]
BroadcastCallback = Callable[["BroadcastEvent"], Any]
ErrorListener = Callable[[Exception], Any]


@dataclass(frozen=True)
class ChannelOptions:
    """Per-channel broadcast options sent with the subscription request."""

    receive_own_broadcasts: bool = False
    acknowledge_broadcasts: bool = False


@dataclass(frozen=True)
class ChangeListener:
    """Listener for insert, update or delete events on one table."""

    filter: ChangeFilter
    callback: ChangeCallback
    record_type: Any = None

    @property
    def kind(self) -> EventKind | None:
        return self.filter.kind

    @property
    def token(self) -> str:
        return self.filter.token

    def matches(self, envelope: Envelope) -> bool:
        return self.filter.matches(envelope)


@dataclass(frozen=True)
class BroadcastListener:
    """Listener for broadcast messages with one event name, or all of them."""

    event: str
    callback: BroadcastCallback
    payload_type: Any = None

    @property
    def kind(self) -> EventKind:
        return EventKind.BROADCAST

    @property
    def token(self) -> str:
        return f"broadcast:{self.event}"

    def matches(self, envelope: Envelope) -> bool:
        if envelope.kind is not EventKind.BROADCAST:
            return False
        return self.event == ALL_EVENTS or envelope.event == self.event


Listener = ChangeListener | BroadcastListener


class Channel:
    """A named realtime channel.

    Obtain channels through Realtime.channel(); the facade owns them and
    returns the same instance for the same name while it is live.
    """

    def __init__(
        self,
        name: str,
        connection: RealtimeConnection,
        *,
        options: ChannelOptions | None = None,
        decoder: EventDecoder | None = None,
        on_release: Callable[[Channel], None] | None = None,
    ) -> None:
        self._name = name
        self._connection = connection
        self._options = options or ChannelOptions()
        self._decoder = decoder or EventDecoder()
        self._on_release = on_release
        self._state = ChannelState.IDLE
        self._listeners: list[Listener] = []
        self._error_listener: ErrorListener | None = None
        self._subscribe_called = False
        self._subscribe_frame: Frame | None = None
        self._pending: asyncio.Future[None] | None = None
        self._blocking_waiters = 0
        self._last_ack: Ack | None = None
        self._awaiting_resubscription = False
        self._released = False
        self._inbox: asyncio.Queue[Envelope] = asyncio.Queue()
        self._dispatcher: asyncio.Task[None] | None = None
        self._callback_tasks: set[asyncio.Task[Any]] = set()
        connection.attach(self)

    def __repr__(self) -> str:
        return f"Channel(name={self._name!r}, state={self._state.value})"

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> ChannelState:
        """Get the current subscription state."""
        return self._state

    @property
    def options(self) -> ChannelOptions:
        return self._options

    @property
    def listeners(self) -> tuple[Listener, ...]:
        """Registered listeners in registration order."""
        return tuple(self._listeners)

    @property
    def filters(self) -> list[str]:
        """Compiled filter tokens, deduplicated, in registration order."""
        return list(dict.fromkeys(listener.token for listener in self._listeners))

    @property
    def last_ack(self) -> Ack | None:
        """The most recent subscription acknowledgment from the server."""
        return self._last_ack

    @property
    def is_subscribed(self) -> bool:
        return self._state is ChannelState.SUBSCRIBED

    @property
    def awaiting_resubscription(self) -> bool:
        """Check if the channel must re-send its request after a reconnect."""
        return self._awaiting_resubscription

    def _transition(self, trigger: ChannelTrigger) -> bool:
        result = next_state(self._state, trigger)
        if not result.success or result.to_state is None:
            logger.debug("Channel transition refused", channel=self._name, reason=result.error)
            return False
        if result.to_state is not result.from_state:
            self._state = result.to_state
            logger.debug(
                "Channel state changed",
                channel=self._name,
                from_state=result.from_state.value,
                to_state=result.to_state.value,
            )
        return True

    # ------------------------------------------------------------------
    # Listener registration
    # ------------------------------------------------------------------

    def _ensure_registrable(self) -> None:
        if self._subscribe_called:
            raise AlreadySubscribingError(
                f"Cannot register listeners on '{self._name}' after subscribe() was called"
            )
        if self._state.is_terminal:
            raise ChannelClosedError(f"Channel '{self._name}' is {self._state.value}")

    def _add_change_listener(
        self,
        kind: EventKind | None,
        table: str,
        callback: ChangeCallback,
        schema: str,
        predicate: str | Predicate | None,
        record_type: Any,
    ) -> Channel:
        self._ensure_registrable()
        change_filter = ChangeFilter.build(kind, table, schema=schema, predicate=predicate)
        self._decoder.prepare(record_type)
        self._listeners.append(ChangeListener(change_filter, callback, record_type))
        logger.debug("Listener registered", channel=self._name, token=change_filter.token)
        return self

    def on_insert(
        self,
        table: str,
        callback: ChangeCallback,
        *,
        schema: str = "public",
        predicate: str | Predicate | None = None,
        record_type: Any = None,
    ) -> Channel:
        """Listen for inserted rows.

        Args:
            table: Table to watch
            callback: Sync or async callable receiving a ChangeEvent
            schema: Database schema of the table
            predicate: Optional ``column=eq.value`` row filter
            record_type: Optional shape the row is decoded into

        Raises:
            AlreadySubscribingError: If subscribe() was already called
            InvalidFilterError: If the schema, table or predicate is invalid
            TypeError: If record_type is not a shape pydantic can validate
        """
        return self._add_change_listener(
            EventKind.INSERT, table, callback, schema, predicate, record_type
        )

    def on_update(
        self,
        table: str,
        callback: ChangeCallback,
        *,
        schema: str = "public",
        predicate: str | Predicate | None = None,
        record_type: Any = None,
    ) -> Channel:
        """Listen for updated rows. Arguments as for on_insert()."""
        return self._add_change_listener(
            EventKind.UPDATE, table, callback, schema, predicate, record_type
        )

    def on_delete(
        self,
        table: str,
        callback: ChangeCallback,
        *,
        schema: str = "public",
        predicate: str | Predicate | None = None,
        record_type: Any = None,
    ) -> Channel:
        """Listen for deleted rows. The predicate is checked against the old row."""
        return self._add_change_listener(
            EventKind.DELETE, table, callback, schema, predicate, record_type
        )

    def on_change(
        self,
        table: str,
        callback: ChangeCallback,
        *,
        schema: str = "public",
        predicate: str | Predicate | None = None,
        record_type: Any = None,
    ) -> Channel:
        """Listen for every change kind on a table with one ``*`` filter.

        Use ChangeEvent.kind to tell inserts, updates and deletes apart.
        Arguments as for on_insert().
        """
        return self._add_change_listener(None, table, callback, schema, predicate, record_type)

    def on_broadcast(
        self,
        event: str,
        callback: BroadcastCallback,
        *,
        payload_type: Any = None,
    ) -> Channel:
        """Listen for broadcast messages named ``event`` (``"*"`` for all)."""
        self._ensure_registrable()
        if not event or not event.strip():
            raise InvalidFilterError("Broadcast event name must not be empty")
        self._decoder.prepare(payload_type)
        self._listeners.append(BroadcastListener(event, callback, payload_type))
        logger.debug("Listener registered", channel=self._name, token=f"broadcast:{event}")
        return self

    def on_error(self, callback: ErrorListener) -> Channel:
        """Set the listener for background errors of this channel."""
        self._error_listener = callback
        return self

    def report_error(self, error: Exception) -> None:
        """Surface a background error to the error listener or the connection."""
        if self._error_listener is None:
            self._connection.report_error(error)
            return
        fire_and_forget(
            self._error_listener, error, tasks=self._callback_tasks, label="channel.on_error"
        )

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def _build_subscribe_frame(self) -> Frame:
        change_configs: dict[str, dict[str, str]] = {}
        for listener in self._listeners:
            if isinstance(listener, ChangeListener):
                change_configs.setdefault(listener.token, listener.filter.to_config())
        return subscribe_frame(
            self._name,
            self.filters,
            list(change_configs.values()),
            receive_own_broadcasts=self._options.receive_own_broadcasts,
            acknowledge_broadcasts=self._options.acknowledge_broadcasts,
        )

    def _new_pending(self) -> asyncio.Future[None]:
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        future.add_done_callback(self._on_pending_settled)
        self._pending = future
        return future

    @staticmethod
    def _on_pending_settled(future: asyncio.Future[None]) -> None:
        # Outcomes are reported through other paths when nobody waits
        if not future.cancelled():
            future.exception()

    def _fail_pending(self, error: Exception) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.set_exception(error)

    async def subscribe(
        self,
        block_until_subscribed: bool = False,
        timeout: float | None = None,
    ) -> None:
        """Send the subscription request for every registered listener.

        Connects the shared connection first if it is not open yet. Calling
        again while subscribing or subscribed sends nothing.

        Args:
            block_until_subscribed: Wait for the server acknowledgment
            timeout: Wait bound in seconds (defaults to subscribe_timeout_s)

        Raises:
            SubscriptionTimeoutError: No acknowledgment within the bound
            SubscriptionRejectedError: The server refused the subscription
            ChannelClosedError: The channel was released or its connection
                disconnected while waiting
            RealtimeConnectionError: The connection could not be opened
            NotConnectedError: The request could not be sent or queued
        """
        if self._state.is_terminal:
            raise ChannelClosedError(f"Channel '{self._name}' is {self._state.value}")

        self._subscribe_called = True

        if self._state is ChannelState.IDLE:
            if self._connection.state is ConnectionState.DISCONNECTED:
                await self._connection.connect()
            if self._state is ChannelState.IDLE:
                await self._send_subscribe()

        if block_until_subscribed:
            await self._wait_subscribed(timeout)

    async def _send_subscribe(self) -> None:
        if self._subscribe_frame is None:
            self._subscribe_frame = self._build_subscribe_frame()

        self._transition(ChannelTrigger.SUBSCRIBE)
        self._new_pending()
        logger.info("Subscribing channel", channel=self._name, filters=self.filters)
        try:
            await self._connection.send_control(self._subscribe_frame)
        except RealtimeError:
            if self._state is ChannelState.SUBSCRIBING:
                self._transition(ChannelTrigger.SEND_FAILED)
                self._pending = None
            raise

    async def _wait_subscribed(self, timeout: float | None) -> None:
        if self._state is ChannelState.SUBSCRIBED:
            return
        future = self._pending
        if future is None:
            raise ChannelClosedError(f"Channel '{self._name}' has no subscription in flight")

        bound = timeout if timeout is not None else self._connection.config.subscribe_timeout_s
        self._blocking_waiters += 1
        try:
            await asyncio.wait_for(asyncio.shield(future), timeout=bound)
        except TimeoutError as e:
            raise SubscriptionTimeoutError(self._name, bound) from e
        finally:
            self._blocking_waiters -= 1

    def handle_ack(self, ack: Ack) -> None:
        """Apply a subscription acknowledgment. Called by the connection."""
        self._last_ack = ack
        if self._state is not ChannelState.SUBSCRIBING:
            logger.debug("Ack ignored", channel=self._name, state=self._state.value)
            return

        future = self._pending
        if ack.ok:
            resubscribed = self._awaiting_resubscription
            self._awaiting_resubscription = False
            self._transition(ChannelTrigger.ACK_OK)
            if future is not None and not future.done():
                future.set_result(None)
            self._ensure_dispatcher()
            logger.info("Channel subscribed", channel=self._name, resubscribed=resubscribed)
            return

        error = SubscriptionRejectedError(
            self._name,
            ack.error_code or "SUBSCRIBE_FAILED",
            ack.error_message or "Subscription failed",
        )
        logger.warning(
            "Subscription rejected",
            channel=self._name,
            code=error.code,
            message=error.message,
        )

        if self._awaiting_resubscription:
            # resubscribe() reports the failure; the channel stays SUBSCRIBING
            if future is not None and not future.done():
                future.set_exception(error)
            return

        self._transition(ChannelTrigger.ACK_REJECTED)
        waiting = self._blocking_waiters > 0
        if future is not None and not future.done():
            future.set_exception(error)
        if not waiting:
            self.report_error(error)
        self._release()

    # ------------------------------------------------------------------
    # Reconnection
    # ------------------------------------------------------------------

    def mark_awaiting_resubscription(self) -> None:
        """Flag the channel for resubscription after a connection drop."""
        if self._state not in (ChannelState.SUBSCRIBING, ChannelState.SUBSCRIBED):
            return
        self._transition(ChannelTrigger.CONNECTION_LOST)
        self._awaiting_resubscription = True
        if self._pending is None or self._pending.done():
            self._new_pending()
        logger.debug("Channel awaiting resubscription", channel=self._name)

    async def resubscribe(self) -> None:
        """Re-send the original subscription request after a reconnect.

        Failures go to the error listener as ResubscriptionFailedError, or
        are logged; the channel then stays SUBSCRIBING.
        """
        if not self._awaiting_resubscription or self._state is not ChannelState.SUBSCRIBING:
            return
        frame = self._subscribe_frame
        future = self._pending
        if frame is None or future is None:
            return

        logger.info("Resubscribing channel", channel=self._name)
        try:
            await self._connection.send_control(frame)
            await asyncio.wait_for(
                asyncio.shield(future),
                timeout=self._connection.config.subscribe_timeout_s,
            )
        except ChannelClosedError:
            return
        except (RealtimeError, TimeoutError) as e:
            if self._state.is_terminal:
                return
            reason = str(e) or "no acknowledgment before timeout"
            error = ResubscriptionFailedError(self._name, reason)
            if self._error_listener is not None:
                self.report_error(error)
            else:
                logger.warning("Resubscription failed", channel=self._name, reason=reason)
            if future.done() and self._state is ChannelState.SUBSCRIBING:
                self._new_pending()

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def deliver(self, envelope: Envelope) -> None:
        """Queue an inbound event for dispatch. Called by the connection."""
        if self._state is not ChannelState.SUBSCRIBED:
            logger.debug(
                "Event dropped, channel not subscribed",
                channel=self._name,
                state=self._state.value,
            )
            return
        self._ensure_dispatcher()
        self._inbox.put_nowait(envelope)

    def _ensure_dispatcher(self) -> None:
        if self._released:
            return
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.create_task(
                self._dispatch_loop(), name=f"dispatch:{self._name}"
            )

    async def _dispatch_loop(self) -> None:
        while not self._released:
            envelope = await self._inbox.get()
            for listener in tuple(self._listeners):
                if self._released:
                    return
                if listener.matches(envelope):
                    await self._invoke(listener, envelope)

    async def _invoke(self, listener: Listener, envelope: Envelope) -> None:
        try:
            if isinstance(listener, ChangeListener):
                event: Any = self._decoder.decode_change(envelope, listener.record_type)
            else:
                event = self._decoder.decode_broadcast(envelope, listener.payload_type)
        except DecodeError as e:
            logger.warning(
                "Event skipped, payload could not be decoded",
                channel=self._name,
                kind=envelope.kind.value,
                table=envelope.table,
                event_name=envelope.event,
                error=str(e),
            )
            self.report_error(e)
            return

        try:
            result = listener.callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(
                "Listener callback error",
                channel=self._name,
                token=listener.token,
                error=str(e),
            )

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def broadcast(self, event: str, payload: Any = None) -> None:
        """Publish a broadcast message on this channel.

        Args:
            event: Event name
            payload: JSON-compatible value or pydantic model

        Raises:
            ChannelClosedError: The channel was released
            NotConnectedError: The connection is not currently open
        """
        if self._state.is_terminal:
            raise ChannelClosedError(f"Channel '{self._name}' is {self._state.value}")
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json")
        await self._connection.send_data(publish_frame(self._name, event, payload))
        logger.debug("Broadcast sent", channel=self._name, event_name=event)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def unsubscribe(self) -> None:
        """Leave the channel and release its listeners. Idempotent."""
        if self._state.is_terminal:
            return

        was_active = self._state in (ChannelState.SUBSCRIBING, ChannelState.SUBSCRIBED)
        self._transition(ChannelTrigger.UNSUBSCRIBE)
        self._awaiting_resubscription = False
        self._fail_pending(ChannelClosedError(f"Channel '{self._name}' was unsubscribed"))

        if was_active:
            try:
                await self._connection.send_control(unsubscribe_frame(self._name))
            except RealtimeError as e:
                logger.debug("Unsubscribe not sent", channel=self._name, error=str(e))

        self._release()
        logger.info("Channel unsubscribed", channel=self._name)

    async def close(self) -> None:
        """Close the channel because its connection is gone."""
        if self._state is ChannelState.CLOSED:
            return
        self._transition(ChannelTrigger.CLOSE)
        self._awaiting_resubscription = False
        self._fail_pending(ChannelClosedError(f"Channel '{self._name}' was closed"))

        dispatcher = self._dispatcher
        self._release()
        if dispatcher is not None and dispatcher is not asyncio.current_task():
            await asyncio.gather(dispatcher, return_exceptions=True)
        logger.debug("Channel closed", channel=self._name)

    def _release(self) -> None:
        if self._released:
            return
        self._released = True
        self._listeners = []

        dispatcher = self._dispatcher
        if dispatcher is not None and dispatcher is not asyncio.current_task():
            dispatcher.cancel()

        self._connection.detach(self)
        if self._on_release is not None:
            self._on_release(self)
