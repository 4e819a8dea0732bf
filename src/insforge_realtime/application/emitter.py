"""Connection-level event listeners.

Realtime.on() listeners are keyed by server event name and receive a
RawMessage for every matching frame, whatever channel it arrived on. A few
names are reserved for connection events:

- connect: the connection (re)opened; payload is None
- connect_error: a connect or reconnect attempt failed; payload is the message
- disconnect: the connection closed or dropped; payload is the reason
- error: a background error no channel handled; payload is the exception
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

CONNECT = "connect"
CONNECT_ERROR = "connect_error"
DISCONNECT = "disconnect"
ERROR = "error"

RESERVED_EVENTS = frozenset({CONNECT, CONNECT_ERROR, DISCONNECT, ERROR})


def fire_and_forget(
    callback: Callable[..., Any],
    *args: Any,
    tasks: set[asyncio.Task[Any]],
    label: str,
) -> None:
    """Invoke a sync or async callback without letting it fail the caller.

    Coroutine results are scheduled as tasks kept alive in ``tasks``.
    Failures are logged.
    """
    try:
        result = callback(*args)
    except Exception as e:
        logger.warning("Callback error", callback=label, error=str(e))
        return

    if not inspect.isawaitable(result):
        return

    task = asyncio.ensure_future(result)
    tasks.add(task)

    def _done(t: asyncio.Task[Any]) -> None:
        tasks.discard(t)
        if not t.cancelled() and t.exception() is not None:
            logger.warning("Callback error", callback=label, error=str(t.exception()))

    task.add_done_callback(_done)


@dataclass(frozen=True)
class _Listener:
    callback: Any
    once: bool


class EventEmitter:
    """Per-event listener sets with on/off/once semantics."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[_Listener]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    def on(self, event: str, callback: Any) -> None:
        """Call ``callback(payload)`` every time ``event`` is emitted."""
        self._add(event, _Listener(callback, once=False))

    def once(self, event: str, callback: Any) -> None:
        """Call ``callback(payload)`` the next time ``event`` is emitted only."""
        self._add(event, _Listener(callback, once=True))

    def off(self, event: str, callback: Any | None = None) -> None:
        """Remove one callback from an event, or every callback when none is given.

        Callbacks registered with once() are removed by the same function.
        """
        if callback is None:
            self._listeners.pop(event, None)
            return
        listeners = self._listeners.get(event)
        if not listeners:
            return
        remaining = [listener for listener in listeners if listener.callback != callback]
        if remaining:
            self._listeners[event] = remaining
        else:
            del self._listeners[event]

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def emit(self, event: str, payload: Any) -> int:
        """Invoke the listeners of an event.

        Returns:
            Number of listeners invoked
        """
        listeners = self._listeners.get(event)
        if not listeners:
            return 0

        snapshot = list(listeners)
        if any(listener.once for listener in snapshot):
            remaining = [listener for listener in listeners if not listener.once]
            if remaining:
                self._listeners[event] = remaining
            else:
                del self._listeners[event]

        for listener in snapshot:
            fire_and_forget(listener.callback, payload, tasks=self._tasks, label=f"on:{event}")
        return len(snapshot)

    def _add(self, event: str, listener: _Listener) -> None:
        if not event or not event.strip():
            raise ValueError("Event name must not be empty")
        self._listeners.setdefault(event, []).append(listener)
