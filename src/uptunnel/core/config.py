"""Configuration types with environment variable support.

Tunnel settings can be configured via environment variables with the UPTUNNEL_ prefix.
Example: UPTUNNEL_REMOTE=http://localhost:9000/socket.io sets the backend URL.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            return tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e


def flatten_config(config: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in config.items():
        full_key = f"{prefix}_{key}" if prefix else key
        if isinstance(value, dict):
            result.update(flatten_config(value, full_key))
        else:
            result[full_key] = value
    return result


class ServerConfig(BaseModel):
    """Front server configuration."""

    bind: str = "0.0.0.0:8080"
    admin_bind: str | None = Field(
        default=None,
        description="Bind address for /health and /metrics. None disables the admin plane.",
    )
    blocking: bool = Field(
        default=False,
        description="Serve with one thread per connection instead of the asyncio loop.",
    )
    backlog: int = Field(
        default=128,
        description="Listen backlog for the front socket.",
    )


class TunnelConfig(BaseSettings):
    """Tunnel and generic proxy configuration.

    All settings can be overridden via environment variables:
    - UPTUNNEL_REMOTE: Backend URL (http://, ws://, https:// or wss://)
    - UPTUNNEL_PRESERVE_HOST_HEADER: Forward the inbound Host header unchanged
    - UPTUNNEL_CONNECT_TIMEOUT: Backend connect timeout (seconds)
    - etc.
    """

    model_config = SettingsConfigDict(
        env_prefix="UPTUNNEL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    remote: str = Field(
        default="http://localhost:9000",
        description="Backend URL that inbound paths are appended to.",
    )
    preserve_host_header: bool = Field(
        default=False,
        description="Forward the inbound Host header instead of the backend host.",
    )
    rewrite_origin: bool = Field(
        default=True,
        description="Rewrite an inbound Origin header to point at the backend.",
    )
    connect_timeout: float | None = Field(
        default=30.0,
        description="Backend connect timeout (seconds). None or 0 for indefinite.",
    )
    verify_tls: bool = Field(
        default=True,
        description="Verify backend certificates for https:// and wss:// remotes.",
    )
    read_chunk_size: int = Field(
        default=64 * 1024,
        ge=1,
        description="Maximum bytes read from either socket per relay step. Default 64KB.",
    )
    max_header_size: int = Field(
        default=64 * 1024,
        ge=1,
        description="Largest backend response head accepted before switch-over. Default 64KB.",
    )
    drain_timeout: float = Field(
        default=5.0,
        description="Seconds the backend may keep sending after a client-initiated half-close.",
    )
    proxy_timeout: float | None = Field(
        default=600.0,
        description="Timeout for ordinary proxied requests (seconds). None for indefinite.",
    )
    max_body_size: int = Field(
        default=64 * 1024 * 1024,
        description="Largest request body accepted for ordinary proxying (bytes). Default 64MB.",
    )

    def to_display_dict(self) -> dict[str, Any]:
        """Export current configuration as a dictionary for display."""
        return self.model_dump()


_config: TunnelConfig | None = None


def get_config() -> TunnelConfig:
    """Get the global configuration instance.

    Returns a cached instance of TunnelConfig that reads from environment variables.
    To reload config (e.g., in tests), call clear_config() first.
    """
    global _config
    if _config is None:
        _config = TunnelConfig()
    return _config


def clear_config() -> None:
    """Clear the cached configuration.

    Call this to force reloading of environment variables on next get_config() call.
    """
    global _config
    _config = None
