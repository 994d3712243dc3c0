"""Asyncio front server: one request per connection, handed to the TunnelController."""

from __future__ import annotations

import asyncio
import contextlib
import socket

import structlog

from uptunnel.core.config import ServerConfig, TunnelConfig
from uptunnel.core.exceptions import ConfigurationError, RequestRejected
from uptunnel.protocol.framing import RequestReader
from uptunnel.protocol.headers import is_upgrade_request
from uptunnel.server.proxy import HttpProxy, ProxyResponse
from uptunnel.tunnel.connector import StreamConnection
from uptunnel.tunnel.controller import TunnelController
from uptunnel.tunnel.request import ClientIO, InboundRequest
from uptunnel.tunnel.response import ResponseStream

logger = structlog.get_logger()


def split_bind(bind: str) -> tuple[str, int]:
    """Parse ``host:port`` (IPv6 hosts in brackets)."""
    host, _, port = bind.rpartition(":")
    if not host or not port.isdigit():
        raise ValueError(f"Invalid bind address: {bind!r}")
    return host.strip("[]"), int(port)


def build_inbound_request(
    reader: RequestReader,
    remote_addr: str | None,
    io: ClientIO | socket.socket,
    nonblocking: bool = True,
) -> InboundRequest:
    """Turn a complete request into what the controller consumes.

    For upgrade requests, body bytes and anything the client sent after the
    request become ``preread``, relayed to the backend as-is.
    """
    headers = reader.headers
    if is_upgrade_request(headers):
        preread, body = reader.body + reader.trailing, b""
    else:
        preread, body = b"", reader.body
    return InboundRequest(
        method=reader.method,
        path=reader.path,
        query_string=reader.query_string,
        version=reader.version,
        headers=headers,
        remote_addr=remote_addr,
        io=io,
        preread=preread,
        body=body,
        nonblocking=nonblocking,
    )


async def write_proxy_response(response: ResponseStream, result: ProxyResponse) -> None:
    await response.respond(result.status, result.headers, result.body, result.reason)


class TunnelServer:
    """Serves HTTP on an asyncio listener.

    Requests are framed by h11. Upgrade requests keep their connection and any
    bytes read past the request; everything else has its body read and is
    answered with ``Connection: close``.
    """

    def __init__(
        self,
        config: TunnelConfig,
        server_config: ServerConfig | None = None,
        controller: TunnelController | None = None,
    ) -> None:
        self.config = config
        self.server_config = server_config or ServerConfig()
        self.proxy = HttpProxy(config)
        self.controller = controller or TunnelController(config, self.proxy)
        self._server: asyncio.Server | None = None
        self._connections: set[asyncio.Task] = set()

    @property
    def port(self) -> int | None:
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        host, port = split_bind(self.server_config.bind)
        await self.proxy.start()
        self._server = await asyncio.start_server(
            self._handle_connection,
            host,
            port,
            backlog=self.server_config.backlog,
            limit=self.config.read_chunk_size * 2,
        )
        logger.info(
            "Tunnel server started", bind=self.server_config.bind, remote=self.config.remote
        )

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        for task in list(self._connections):
            task.cancel()
        if self._connections:
            await asyncio.gather(*self._connections, return_exceptions=True)
        await self.proxy.close()
        logger.info("Tunnel server stopped")

    async def _read_request(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> RequestReader | None:
        request = RequestReader(self.config.max_header_size, self.config.max_body_size)
        while True:
            data = await reader.read(self.config.read_chunk_size)
            if request.feed(data):
                return None if request.closed else request
            if request.expects_continue:
                writer.write(request.accept_continue())

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)
        peer = writer.get_extra_info("peername")
        remote_addr = peer[0] if peer else None
        response = ResponseStream(StreamConnection(reader, writer))

        try:
            inbound = await self._read_request(reader, writer)
            if inbound is None:
                return
            request = build_inbound_request(inbound, remote_addr, ClientIO(reader, writer))

            result = await self.controller.handle(request)
            if isinstance(result, ProxyResponse):
                await write_proxy_response(response, result)
        except RequestRejected as e:
            logger.info("Rejected request", remote_addr=remote_addr, error=e.message)
            if not response.started:
                await response.respond(
                    e.status, [("Content-Type", "text/plain")], e.message.encode()
                )
        except ConfigurationError as e:
            logger.error("Host misconfigured", error=e.message)
            if not response.started:
                await response.respond(
                    500, [("Content-Type", "text/plain")], b"Internal Server Error"
                )
        except OSError as e:
            logger.debug("Client connection failed", remote_addr=remote_addr, error=str(e))
        finally:
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()
            if task is not None:
                self._connections.discard(task)
