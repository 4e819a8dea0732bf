"""Main entry point for the command-line listener and publisher."""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING, Any

import structlog

from insforge_realtime.application.realtime import Realtime
from insforge_realtime.config.loader import load_config
from insforge_realtime.domain.model.events import EventKind
from insforge_realtime.observability.logging import LogContext, setup_logging

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from insforge_realtime.config.schema import RealtimeConfig
    from insforge_realtime.domain.model.events import BroadcastEvent, ChangeEvent

logger = structlog.get_logger(__name__)

CHANGE_KINDS = frozenset({EventKind.INSERT, EventKind.UPDATE, EventKind.DELETE})


class ListenerRuntime:
    """Keeps one channel subscribed until a shutdown is requested.

    Listens to a table's change stream and/or a broadcast event on a single
    channel, handing every delivery to ``on_event``.
    """

    def __init__(
        self,
        config: RealtimeConfig,
        channel: str,
        *,
        on_event: Callable[[str, ChangeEvent | BroadcastEvent], None],
        table: str | None = None,
        schema: str = "public",
        predicate: str | None = None,
        kinds: tuple[EventKind, ...] = (EventKind.INSERT, EventKind.UPDATE, EventKind.DELETE),
        event: str | None = None,
        token: str | None = None,
    ) -> None:
        self.config = config
        self.channel_name = channel
        self._on_event = on_event
        self._table = table
        self._schema = schema
        self._predicate = predicate
        self._kinds = kinds
        self._event = event
        self._shutdown_event = asyncio.Event()
        self._realtime = Realtime(config, token_provider=(lambda: token) if token else None)

    @property
    def realtime(self) -> Realtime:
        return self._realtime

    async def start(self) -> None:
        """Connect, register listeners and wait for the subscription ack."""
        logger.info("Starting listener", channel=self.channel_name, base_url=self.config.base_url)

        self._realtime.on_error(self._on_error)
        channel = self._realtime.channel(self.channel_name)

        if self._table and CHANGE_KINDS <= set(self._kinds):
            channel.on_change(
                self._table, self._emit, schema=self._schema, predicate=self._predicate
            )
        elif self._table:
            registrars: dict[EventKind, Callable[..., Any]] = {
                EventKind.INSERT: channel.on_insert,
                EventKind.UPDATE: channel.on_update,
                EventKind.DELETE: channel.on_delete,
            }
            for kind in self._kinds:
                registrars[kind](
                    self._table,
                    self._emit,
                    schema=self._schema,
                    predicate=self._predicate,
                )
        if self._event or not self._table:
            channel.on_broadcast(self._event or "*", self._emit)

        channel.on_error(self._on_error)
        await self._realtime.connect()
        await channel.subscribe(block_until_subscribed=True)

        logger.info("Listener subscribed", channel=self.channel_name, filters=channel.filters)

    def _emit(self, event: ChangeEvent | BroadcastEvent) -> None:
        self._on_event(self.channel_name, event)

    def _on_error(self, error: Exception) -> None:
        logger.error("Realtime error", channel=self.channel_name, error=str(error))
        if not self._realtime.is_connected and not self._realtime.channels:
            self.request_shutdown()

    async def stop(self) -> None:
        logger.info("Stopping listener", channel=self.channel_name)
        await self._realtime.close()
        logger.info("Listener stopped")

    async def run_until_shutdown(self) -> None:
        """Run until shutdown signal received."""
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()


async def run_listener(
    config_path: Path,
    channel: str,
    *,
    on_event: Callable[[str, ChangeEvent | BroadcastEvent], None],
    override_path: Path | None = None,
    table: str | None = None,
    schema: str = "public",
    predicate: str | None = None,
    kinds: tuple[EventKind, ...] = (EventKind.INSERT, EventKind.UPDATE, EventKind.DELETE),
    event: str | None = None,
    token: str | None = None,
) -> None:
    """Listen on a channel until SIGINT/SIGTERM."""
    setup_logging()

    config = load_config(config_path, override_path=override_path)

    runtime = ListenerRuntime(
        config,
        channel,
        on_event=on_event,
        table=table,
        schema=schema,
        predicate=predicate,
        kinds=kinds,
        event=event,
        token=token,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, runtime.request_shutdown)

    with LogContext(channel=channel):
        try:
            await runtime.start()
            await runtime.run_until_shutdown()
        finally:
            await runtime.stop()


async def run_publish(
    config_path: Path,
    channel: str,
    event: str,
    payload: Any,
    *,
    override_path: Path | None = None,
    token: str | None = None,
) -> None:
    """Connect, publish one broadcast on a channel and disconnect."""
    setup_logging()

    config = load_config(config_path, override_path=override_path)

    with LogContext(channel=channel, event_name=event):
        async with Realtime(
            config, token_provider=(lambda: token) if token else None
        ) as realtime:
            await realtime.channel(channel).broadcast(event, payload)
            logger.info("Broadcast published")


def main() -> None:
    """CLI entry point - delegates to typer app."""
    from insforge_realtime.cli.app import app  # noqa: PLC0415

    app()


if __name__ == "__main__":
    main()
