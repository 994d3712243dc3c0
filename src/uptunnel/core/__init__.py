"""Core."""

from .config import ServerConfig, TunnelConfig, clear_config, get_config
from .exceptions import (
    BackendUnavailable,
    ConfigurationError,
    PeerClosed,
    ProtocolParseError,
    RequestRejected,
    TransportError,
    UptunnelError,
    format_error_for_user,
)

__all__ = [
    # Config
    "TunnelConfig",
    "ServerConfig",
    "get_config",
    "clear_config",
    # Errors
    "UptunnelError",
    "ConfigurationError",
    "BackendUnavailable",
    "ProtocolParseError",
    "PeerClosed",
    "RequestRejected",
    "TransportError",
    "format_error_for_user",
]
