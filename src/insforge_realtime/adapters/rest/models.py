"""Pydantic models for the realtime REST management API.

The platform speaks camelCase JSON; models expose snake_case attributes and
accept either form on input.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    """Base for API payloads: camelCase on the wire, unknown keys ignored."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_wire(self) -> dict[str, Any]:
        """Serialize with camelCase keys, leaving out unset optionals."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# =============================================================================
# CHANNELS
# =============================================================================


class RealtimeChannel(ApiModel):
    """A channel definition registered on the platform."""

    id: str
    pattern: str
    description: str | None = None
    webhook_urls: list[str] | None = None
    enabled: bool = True
    created_at: str | None = None
    updated_at: str | None = None


class CreateChannelRequest(ApiModel):
    pattern: str = Field(..., min_length=1)
    description: str | None = None
    webhook_urls: list[str] | None = None
    enabled: bool = True


class UpdateChannelRequest(ApiModel):
    pattern: str | None = None
    description: str | None = None
    webhook_urls: list[str] | None = None
    enabled: bool | None = None


class DeleteChannelResponse(ApiModel):
    message: str


# =============================================================================
# MESSAGES
# =============================================================================


class RealtimeMessage(ApiModel):
    """A persisted message from the channel history."""

    id: str
    event_name: str
    channel_id: str | None = None
    channel_name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    sender_type: str = "user"
    sender_id: str | None = None
    ws_audience_count: int = 0
    wh_audience_count: int = 0
    wh_delivered_count: int = 0
    created_at: str | None = None


class EventCount(ApiModel):
    event_name: str
    count: int


class MessageStats(ApiModel):
    """Aggregate message statistics."""

    total_messages: int
    wh_delivery_rate: float
    top_events: list[EventCount] = Field(default_factory=list)


class BroadcastRequest(ApiModel):
    topic: str
    event: str
    payload: Any = Field(default_factory=dict)


# =============================================================================
# ERRORS
# =============================================================================


class ErrorResponse(ApiModel):
    """Error body returned by the platform for non-2xx responses."""

    status_code: int | None = None
    error: str = "UNKNOWN_ERROR"
    message: str = ""
    next_actions: str | None = None
