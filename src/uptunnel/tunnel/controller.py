"""Per-request orchestration of upgrade tunnels.

A request moves through these steps:

1. Checking: no Upgrade header means the generic proxy handles it and its result is
   returned unchanged.
2. Connecting: one attempt to reach the backend. Failure answers ``502 Bad Gateway``.
   If the client disappears first, the attempt is abandoned and nothing is sent.
3. Handshaking: the upgrade request is written once; relaying starts right after,
   since the backend's first bytes are its answer.
4. Relaying: see ``uptunnel.tunnel.relay``.
"""

from __future__ import annotations

import asyncio
import contextlib
import socket
from typing import Any, Protocol

import structlog

from uptunnel.core.config import TunnelConfig
from uptunnel.core.exceptions import BackendUnavailable, ConfigurationError, PeerClosed
from uptunnel.observability.metrics import TUNNEL_REQUESTS
from uptunnel.protocol.handshake import HandshakeParser, HandshakeRequest
from uptunnel.protocol.headers import (
    ForwardingHeaderBuilder,
    build_handshake_headers,
    is_upgrade_request,
)
from uptunnel.tunnel.connector import BackendConnector, StreamConnection
from uptunnel.tunnel.relay import DuplexRelay, Side, TunnelSession
from uptunnel.tunnel.request import BackendTarget, ClientIO, InboundRequest, resolve_target
from uptunnel.tunnel.response import ResponseStream

logger = structlog.get_logger()

BAD_GATEWAY_BODY = b"Bad Gateway"


class GenericProxy(Protocol):
    """Handles every request that is not an upgrade."""

    async def handle(self, request: InboundRequest) -> Any: ...


class TunnelController:
    """Routes upgrade requests into tunnels and everything else to the generic proxy."""

    def __init__(
        self,
        config: TunnelConfig,
        proxy: GenericProxy,
        connector: BackendConnector | None = None,
        forwarding: ForwardingHeaderBuilder | None = None,
    ) -> None:
        self.config = config
        self.proxy = proxy
        self.connector = connector or BackendConnector(
            connect_timeout=config.connect_timeout,
            verify_tls=config.verify_tls,
        )
        self.forwarding = forwarding or ForwardingHeaderBuilder(
            preserve_host_header=config.preserve_host_header,
            rewrite_origin=config.rewrite_origin,
        )

    async def handle(self, request: InboundRequest) -> Any:
        """Serve one request.

        Returns the generic proxy's result for ordinary requests. Upgrade requests are
        answered on the client connection directly and return None.

        Raises:
            ConfigurationError: If the host cannot stream responses or expose the socket.
        """
        if not is_upgrade_request(request.headers):
            return await self.proxy.handle(request)

        self.check_capabilities(request)
        client = await self._open_client(request)
        response = ResponseStream(client)

        try:
            target = self.resolve_target(request)
            backend, early = await self._connect(target, client)
        except BackendUnavailable as e:
            logger.warning("Backend unavailable", path=request.path, error=e.message)
            TUNNEL_REQUESTS.labels(result="bad_gateway").inc()
            await response.respond(502, [("Content-Type", "text/plain")], BAD_GATEWAY_BODY)
            return None
        except PeerClosed:
            logger.debug("Client left before the backend connected", path=request.path)
            TUNNEL_REQUESTS.labels(result="cancelled").inc()
            client.close()
            return None
        except asyncio.CancelledError:
            TUNNEL_REQUESTS.labels(result="cancelled").inc()
            client.close()
            raise

        TUNNEL_REQUESTS.labels(result="connected").inc()
        session = TunnelSession(
            client=client,
            backend=backend,
            response=response,
            parser=HandshakeParser(self.config.max_header_size),
        )
        logger.info(
            "Tunnel opened",
            session_id=str(session.id),
            backend=target.host_port,
            path=target.request_target,
            upgrade=request.headers.get("Upgrade"),
        )

        handshake = self.build_handshake(request, target)
        try:
            backend.write(handshake.to_bytes())
            await backend.drain()
        except OSError as e:
            logger.warning("Handshake write failed", session_id=str(session.id), error=str(e))
            session.teardown(Side.BACKEND)
            session.release()
            return None

        relay = DuplexRelay(
            session,
            chunk_size=self.config.read_chunk_size,
            drain_timeout=self.config.drain_timeout,
            preread=request.preread + early,
        )
        await relay.run()
        return None

    def call(self, request: InboundRequest) -> Any:
        """Blocking entry point: drive a private event loop until the request is done."""
        return asyncio.run(self.handle(request))

    @staticmethod
    def check_capabilities(request: InboundRequest) -> None:
        if not request.streaming:
            raise ConfigurationError("Host support for response streaming is required")
        if request.io is None:
            raise ConfigurationError("Host support for raw client socket access is required")

    def resolve_target(self, request: InboundRequest) -> BackendTarget:
        return resolve_target(self.config.remote, request.path, request.query_string)

    def build_handshake(self, request: InboundRequest, target: BackendTarget) -> HandshakeRequest:
        headers = build_handshake_headers(request.headers, self.forwarding.build(request, target))
        return HandshakeRequest(
            target=target.request_target,
            headers=headers,
            version=request.version,
        )

    async def _open_client(self, request: InboundRequest) -> StreamConnection:
        io = request.io
        if isinstance(io, ClientIO):
            return StreamConnection(io.reader, io.writer)
        if isinstance(io, socket.socket):
            reader, writer = await asyncio.open_connection(
                sock=io, limit=self.config.read_chunk_size * 2
            )
            return StreamConnection(reader, writer)
        raise ConfigurationError(f"Unsupported client handle: {type(io).__name__}")

    async def _connect(
        self, target: BackendTarget, client: StreamConnection
    ) -> tuple[StreamConnection, bytes]:
        """Connect to the backend while watching the client for a hang-up.

        Returns the backend connection and any bytes the client sent meanwhile.

        Raises:
            BackendUnavailable: If the connect attempt fails.
            PeerClosed: If the client closed before the attempt finished.
        """
        connecting = asyncio.create_task(self.connector.connect(target))
        early = b""
        client_read: asyncio.Task[bytes] | None = asyncio.create_task(
            client.reader.read(self.config.read_chunk_size)
        )
        try:
            while True:
                waiting = {connecting} if client_read is None else {connecting, client_read}
                await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
                if client_read is not None and client_read.done():
                    try:
                        data = client_read.result()
                    except OSError:
                        data = b""
                    client_read = None
                    if not data:
                        raise PeerClosed("client closed during backend connect")
                    # stop reading until the backend can take it
                    early = data
                if connecting.done():
                    return connecting.result(), early
        except BaseException:
            if connecting.done():
                if not connecting.cancelled() and connecting.exception() is None:
                    connecting.result().close()
            else:
                connecting.cancel()
                with contextlib.suppress(asyncio.CancelledError, BackendUnavailable):
                    await connecting
            raise
        finally:
            if client_read is not None and not client_read.done():
                client_read.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await client_read
