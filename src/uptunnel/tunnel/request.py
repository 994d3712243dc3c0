"""Request-side data handed to the tunnel by its host."""

from __future__ import annotations

import asyncio
import socket
import urllib.parse
from dataclasses import dataclass

from multidict import CIMultiDict

from uptunnel.core.exceptions import BackendUnavailable

_DEFAULT_PORTS = {"http": 80, "ws": 80, "https": 443, "wss": 443}
_TLS_SCHEMES = {"https", "wss"}


@dataclass
class ClientIO:
    """Asyncio streams for an inbound connection."""

    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter


@dataclass
class InboundRequest:
    """An inbound HTTP request as exposed by the host.

    ``io`` is the raw client connection: ``ClientIO`` streams on asyncio hosts or
    a plain ``socket.socket`` on blocking hosts. ``preread`` holds bytes the host
    already read past the request head.
    """

    method: str
    path: str
    headers: CIMultiDict[str]
    version: str = "HTTP/1.1"
    query_string: str = ""
    scheme: str = "http"
    remote_addr: str | None = None
    io: ClientIO | socket.socket | None = None
    preread: bytes = b""
    body: bytes = b""
    streaming: bool = True
    nonblocking: bool = True

    @property
    def path_qs(self) -> str:
        return f"{self.path}?{self.query_string}" if self.query_string else self.path


@dataclass(frozen=True)
class BackendTarget:
    """Resolved backend address for one request."""

    host: str
    port: int
    path: str
    scheme: str = "http"
    query_string: str = ""

    @property
    def tls(self) -> bool:
        return self.scheme in _TLS_SCHEMES

    @property
    def host_port(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        if self.port == _DEFAULT_PORTS.get(self.scheme):
            return host
        return f"{host}:{self.port}"

    @property
    def request_target(self) -> str:
        return f"{self.path}?{self.query_string}" if self.query_string else self.path

    @property
    def url(self) -> str:
        scheme = "https" if self.tls else "http"
        return f"{scheme}://{self.host_port}{self.request_target}"


def resolve_target(remote: str, path: str, query_string: str = "") -> BackendTarget:
    """Join the configured remote URL with an inbound path and query string.

    Raises:
        BackendUnavailable: If the remote has no host or an unsupported scheme.
    """
    parsed = urllib.parse.urlsplit(remote)
    scheme = parsed.scheme.lower()
    if scheme not in _DEFAULT_PORTS:
        raise BackendUnavailable(f"Unsupported remote scheme: {parsed.scheme or '(none)'}")
    if not parsed.hostname:
        raise BackendUnavailable(f"Remote has no host: {remote}")
    try:
        port = parsed.port or _DEFAULT_PORTS[scheme]
    except ValueError as e:
        raise BackendUnavailable(f"Invalid remote port: {remote}") from e

    base = parsed.path.rstrip("/")
    if not path.startswith("/"):
        path = f"/{path}"
    full_path = f"{base}{path}" if base else path

    query = "&".join(q for q in (parsed.query, query_string) if q)

    return BackendTarget(
        host=parsed.hostname,
        port=port,
        path=full_path,
        scheme=scheme,
        query_string=query,
    )
