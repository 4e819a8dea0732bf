"""Configuration schema for the realtime client.

Uses Pydantic v2 for validation, serialization, and documentation.
Configuration is built in code or loaded from YAML files and validated
against these models.
"""

from __future__ import annotations

from typing import Literal
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# =============================================================================
# CONNECTION POLICIES
# =============================================================================


class ReconnectConfig(BaseModel):
    """Automatic reconnection policy after an unsolicited transport drop."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = Field(default=True, description="Reconnect automatically on connection loss")
    base_delay_s: float = Field(default=1.0, gt=0.0, description="Delay before the first retry")
    max_delay_s: float = Field(default=5.0, gt=0.0, description="Upper bound for the backoff")
    max_attempts: int = Field(
        default=5,
        ge=0,
        description="Attempts before the connection is given up (0 = unlimited)",
    )
    jitter: float = Field(default=0.1, ge=0.0, le=1.0, description="Relative jitter per delay")

    @model_validator(mode="after")
    def validate_delays(self) -> ReconnectConfig:
        """Ensure the backoff ceiling is not below the initial delay."""
        if self.max_delay_s < self.base_delay_s:
            raise ValueError("max_delay_s must be greater than or equal to base_delay_s")
        return self


class TransportConfig(BaseModel):
    """Socket.IO transport options."""

    model_config = ConfigDict(extra="forbid")

    path: str = Field(default="socket.io", min_length=1, description="Socket.IO endpoint path")
    transports: list[Literal["websocket", "polling"]] = Field(
        default_factory=lambda: ["websocket"],
        min_length=1,
        description="Allowed Engine.IO transports, in preference order",
    )


# =============================================================================
# ROOT CONFIGURATION
# =============================================================================


class RealtimeConfig(BaseModel):
    """Root configuration for a Realtime client instance."""

    model_config = ConfigDict(extra="forbid")

    base_url: str = Field(..., description="Platform base URL, e.g. https://app.insforge.dev")
    anon_key: str | None = Field(
        default=None,
        description="Anonymous key presented when no user token is available",
    )
    connect_timeout_s: float = Field(default=10.0, gt=0.0, description="Handshake timeout")
    subscribe_timeout_s: float = Field(
        default=10.0, gt=0.0, description="Wait bound for subscription acknowledgments"
    )
    send_timeout_s: float = Field(
        default=5.0, gt=0.0, description="Wait bound when the control queue is full"
    )
    control_queue_size: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Subscribe/unsubscribe messages held while disconnected",
    )
    api_path: str = Field(default="/api/realtime", description="REST management API prefix")
    http_timeout_s: float = Field(default=30.0, gt=0.0, description="REST request timeout")
    log_frames: bool = Field(default=False, description="Log every frame sent and received")
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Require an absolute http(s) or ws(s) URL without trailing slash."""
        v = v.strip()
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https", "ws", "wss") or not parsed.netloc:
            raise ValueError(f"base_url must be an absolute http(s) or ws(s) URL, got '{v}'")
        return v.rstrip("/")

    @field_validator("api_path")
    @classmethod
    def validate_api_path(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith("/"):
            v = "/" + v
        return v.rstrip("/")

    @property
    def api_url(self) -> str:
        """Absolute URL of the REST management API."""
        return f"{self.base_url}{self.api_path}"
