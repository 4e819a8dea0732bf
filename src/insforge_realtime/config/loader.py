"""Configuration loading for the realtime client.

Sources are applied in order, later ones winning:

1. the main YAML file
2. an optional override file (deep-merged)
3. INSFORGE_BASE_URL / INSFORGE_ANON_KEY from the environment

String values may reference environment variables as ``$VAR``, ``${VAR}``
or ``${VAR:-default}``.
"""

from __future__ import annotations

import os
import re
from typing import TYPE_CHECKING, Any

import structlog
import yaml
from pydantic import ValidationError

from insforge_realtime.config.schema import RealtimeConfig

if TYPE_CHECKING:
    from collections.abc import Mapping
    from pathlib import Path

logger = structlog.get_logger(__name__)

ENV_OVERRIDES = {
    "INSFORGE_BASE_URL": "base_url",
    "INSFORGE_ANON_KEY": "anon_key",
}

_ENV_REF = re.compile(r"\$\{(?P<braced>\w+)(?::-(?P<default>[^}]*))?\}|\$(?P<bare>\w+)")


class ConfigurationError(Exception):
    """Raised when configuration loading or validation fails."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


def read_config_file(path: Path) -> dict[str, Any]:
    """Parse one YAML configuration file.

    An empty file yields an empty mapping.

    Raises:
        ConfigurationError: If the file is missing, unreadable, not YAML or not a mapping
    """
    if not path.is_file():
        reason = "not found" if not path.exists() else "is not a file"
        raise ConfigurationError(f"Configuration file {reason}: {path}")

    try:
        content = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration file {path}: {e}") from e

    if content is None:
        return {}
    if not isinstance(content, dict):
        raise ConfigurationError(
            f"Configuration in {path} must be a YAML mapping, got {type(content).__name__}"
        )
    return content


def _substitute(match: re.Match[str]) -> str:
    name = match.group("braced") or match.group("bare")
    value = os.environ.get(name)
    if value is not None:
        return value
    if match.group("default") is not None:
        return match.group("default")
    return match.group(0)


def expand_env_vars(value: Any) -> Any:
    """Expand environment references in every string of a nested structure.

    Unset variables without a default are left untouched.
    """
    if isinstance(value, str):
        return _ENV_REF.sub(_substitute, value)
    if isinstance(value, dict):
        return {key: expand_env_vars(item) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    return value


def merge_configs(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Deep merge two configuration mappings without mutating either.

    Nested mappings merge key by key; any other value, lists included,
    is replaced by the override.
    """
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = merge_configs(current, value)
        else:
            merged[key] = value
    return merged


def env_overrides(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Collect top-level settings given through INSFORGE_* variables."""
    environ = os.environ if environ is None else environ
    return {field: environ[var] for var, field in ENV_OVERRIDES.items() if environ.get(var)}


def _describe(error: Mapping[str, Any]) -> str:
    location = ".".join(str(part) for part in error["loc"]) or "<root>"
    return f"  - {location}: {error['msg']}"


def build_config(raw: Mapping[str, Any]) -> RealtimeConfig:
    """Validate a raw mapping into a RealtimeConfig.

    Raises:
        ConfigurationError: Listing one line per invalid field
    """
    try:
        return RealtimeConfig.model_validate(raw)
    except ValidationError as e:
        errors: list[dict[str, Any]] = [dict(error) for error in e.errors()]
        lines = "\n".join(_describe(error) for error in errors)
        raise ConfigurationError(f"Configuration validation failed:\n{lines}", errors) from e


def load_config(
    config_path: Path,
    *,
    override_path: Path | None = None,
    expand_env: bool = True,
) -> RealtimeConfig:
    """Load and validate the client configuration.

    Args:
        config_path: Main YAML file
        override_path: Optional YAML file deep-merged on top of the main one
        expand_env: Expand environment references and apply INSFORGE_* overrides

    Raises:
        ConfigurationError: If any source is unreadable or the result is invalid
    """
    raw = read_config_file(config_path)
    sources = [str(config_path)]

    if override_path is not None:
        raw = merge_configs(raw, read_config_file(override_path))
        sources.append(str(override_path))

    if expand_env:
        overrides = env_overrides()
        raw = merge_configs(expand_env_vars(raw), overrides)
        sources.extend(f"env:{field}" for field in overrides)

    config = build_config(raw)
    logger.info(
        "Configuration loaded",
        sources=sources,
        base_url=config.base_url,
        anon_key_set=config.anon_key is not None,
    )
    return config


EXAMPLE_CONFIG = """\
# InsForge realtime client configuration

# Project URL; INSFORGE_BASE_URL overrides it
base_url: https://your-app.region.insforge.app

# Anonymous key sent when no user token is available; INSFORGE_ANON_KEY overrides it
anon_key: ${INSFORGE_ANON_KEY}

connect_timeout_s: 10.0
subscribe_timeout_s: 10.0
send_timeout_s: 5.0

# Control messages (subscribe, unsubscribe, publish) buffered while offline
control_queue_size: 100

# REST management API, relative to base_url
api_path: /api/realtime
http_timeout_s: 30.0

# Log every inbound and outbound frame at DEBUG
log_frames: false

reconnect:
  enabled: true
  base_delay_s: 1.0
  max_delay_s: 5.0
  # 0 retries forever
  max_attempts: 5
  jitter: 0.1

transport:
  path: socket.io
  transports:
    - websocket
"""


def generate_example_config() -> str:
    """Return a commented example configuration file."""
    return EXAMPLE_CONFIG
