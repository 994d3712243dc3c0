"""Error taxonomy for the tunnel core and its host."""

from __future__ import annotations


class UptunnelError(Exception):
    """Base class for all uptunnel errors."""

    code = "UPTUNNEL_ERROR"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ConfigurationError(UptunnelError):
    """The host lacks a capability the tunnel needs (streaming, raw socket).

    Raised before any backend connection is attempted.
    """

    code = "CONFIGURATION_ERROR"


class BackendUnavailable(UptunnelError):
    """The backend could not be resolved or connected to."""

    code = "BACKEND_UNAVAILABLE"

    def __init__(self, message: str, host: str | None = None, port: int | None = None) -> None:
        super().__init__(message)
        self.host = host
        self.port = port


class ProtocolParseError(UptunnelError):
    """The backend answered the handshake with an unparsable response head."""

    code = "PROTOCOL_PARSE_ERROR"


class RequestRejected(UptunnelError):
    """An inbound request cannot be served as sent. Carries the status to answer with."""

    code = "REQUEST_REJECTED"

    def __init__(self, message: str, status: int = 400) -> None:
        super().__init__(message)
        self.status = status


class PeerClosed(UptunnelError):
    """One side of a tunnel closed its connection."""

    code = "PEER_CLOSED"


class TransportError(UptunnelError):
    """Read or write failure on an established socket."""

    code = "TRANSPORT_ERROR"


def format_error_for_user(error: BaseException) -> str:
    """Render an exception as a one-line message for the CLI."""
    if isinstance(error, UptunnelError):
        return error.message
    if isinstance(error, ConnectionRefusedError):
        return "Connection refused. Is the backend running?"
    if isinstance(error, TimeoutError):
        return "Timed out waiting for the backend."
    if isinstance(error, OSError) and error.strerror:
        return error.strerror
    return str(error) or type(error).__name__
