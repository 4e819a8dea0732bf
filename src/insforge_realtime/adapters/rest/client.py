"""HTTP client for the realtime REST management API.

Covers channel definitions, message history and statistics, and publishing
a broadcast over HTTP without holding a realtime connection.
"""

from __future__ import annotations

import inspect
from typing import TYPE_CHECKING, Any, TypeVar

import httpx
import structlog
from pydantic import BaseModel, TypeAdapter, ValidationError

from insforge_realtime.adapters.rest.models import (
    ApiModel,
    BroadcastRequest,
    CreateChannelRequest,
    DeleteChannelResponse,
    ErrorResponse,
    MessageStats,
    RealtimeChannel,
    RealtimeMessage,
    UpdateChannelRequest,
)
from insforge_realtime.exceptions import ProtocolError, RealtimeConnectionError, RealtimeHTTPError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from insforge_realtime.config.schema import RealtimeConfig

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_CHANNEL = TypeAdapter(RealtimeChannel)
_CHANNEL_LIST = TypeAdapter(list[RealtimeChannel])
_DELETED = TypeAdapter(DeleteChannelResponse)
_STATS = TypeAdapter(MessageStats)
_MESSAGE_LIST = TypeAdapter(list[RealtimeMessage])


class RealtimeRestClient:
    """Async client for ``{base_url}{api_path}``.

    The bearer token is resolved for every request, so a refreshed token
    is picked up without recreating the client.
    """

    def __init__(
        self,
        config: RealtimeConfig,
        *,
        token_provider: Callable[[], Awaitable[str | None] | str | None] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._token_provider = token_provider
        self._client = httpx.AsyncClient(
            base_url=config.api_url,
            timeout=config.http_timeout_s,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> RealtimeRestClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _auth_headers(self) -> dict[str, str]:
        token: str | None = None
        if self._token_provider is not None:
            result = self._token_provider()
            if inspect.isawaitable(result):
                result = await result
            token = result
        token = token or self._config.anon_key
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        body: ApiModel | None = None,
    ) -> Any:
        headers = await self._auth_headers()
        json_body = body.to_wire() if body is not None else None

        try:
            response = await self._client.request(
                method, path, params=params, json=json_body, headers=headers
            )
        except httpx.HTTPError as e:
            logger.warning("Realtime API request failed", method=method, path=path, error=str(e))
            raise RealtimeConnectionError(f"{method} {path} failed: {e}") from e

        logger.debug(
            "Realtime API response",
            method=method,
            path=path,
            status=response.status_code,
        )
        if response.is_success:
            return response.json() if response.content else None
        raise self._error_from(response)

    @staticmethod
    def _error_from(response: httpx.Response) -> RealtimeHTTPError:
        try:
            error = ErrorResponse.model_validate(response.json())
        except (ValueError, ValidationError):
            return RealtimeHTTPError(
                response.status_code,
                response.reason_phrase or "HTTP_ERROR",
                response.text,
            )
        return RealtimeHTTPError(
            error.status_code or response.status_code,
            error.error,
            error.message,
            error.next_actions,
        )

    @staticmethod
    def _parse(adapter: TypeAdapter[T], data: Any) -> T:
        try:
            return adapter.validate_python(data)
        except ValidationError as e:
            raise ProtocolError(f"Unexpected API response: {e}") from e

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    async def list_channels(self) -> list[RealtimeChannel]:
        return self._parse(_CHANNEL_LIST, await self._request("GET", "/channels"))

    async def get_channel(self, channel_id: str) -> RealtimeChannel:
        data = await self._request("GET", f"/channels/{channel_id}")
        return self._parse(_CHANNEL, data)

    async def create_channel(
        self,
        pattern: str,
        *,
        description: str | None = None,
        webhook_urls: list[str] | None = None,
        enabled: bool = True,
    ) -> RealtimeChannel:
        """Register a channel pattern (e.g. ``orders:%``) on the platform."""
        body = CreateChannelRequest(
            pattern=pattern,
            description=description,
            webhook_urls=webhook_urls,
            enabled=enabled,
        )
        data = await self._request("POST", "/channels", body=body)
        return self._parse(_CHANNEL, data)

    async def update_channel(
        self,
        channel_id: str,
        *,
        pattern: str | None = None,
        description: str | None = None,
        webhook_urls: list[str] | None = None,
        enabled: bool | None = None,
    ) -> RealtimeChannel:
        """Update the given fields of a channel; None leaves a field unchanged."""
        body = UpdateChannelRequest(
            pattern=pattern,
            description=description,
            webhook_urls=webhook_urls,
            enabled=enabled,
        )
        data = await self._request("PUT", f"/channels/{channel_id}", body=body)
        return self._parse(_CHANNEL, data)

    async def delete_channel(self, channel_id: str) -> DeleteChannelResponse:
        data = await self._request("DELETE", f"/channels/{channel_id}")
        return self._parse(_DELETED, data)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def get_messages(
        self,
        *,
        channel_id: str | None = None,
        event_name: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[RealtimeMessage]:
        """Fetch persisted messages, newest first."""
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if channel_id is not None:
            params["channelId"] = channel_id
        if event_name is not None:
            params["eventName"] = event_name
        return self._parse(_MESSAGE_LIST, await self._request("GET", "/messages", params=params))

    async def get_message_stats(
        self,
        *,
        channel_id: str | None = None,
        since: str | None = None,
    ) -> MessageStats:
        params: dict[str, Any] = {}
        if channel_id is not None:
            params["channelId"] = channel_id
        if since is not None:
            params["since"] = since
        data = await self._request("GET", "/messages/stats", params=params or None)
        return self._parse(_STATS, data)

    async def broadcast(self, channel: str, event: str, payload: Any = None) -> None:
        """Publish a message through the HTTP API."""
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json")
        body = BroadcastRequest(
            topic=channel, event=event, payload=payload if payload is not None else {}
        )
        await self._request("POST", "/broadcast", body=body)
        logger.debug("Broadcast sent over HTTP", channel=channel, event_name=event)
