"""Bidirectional byte relay for upgraded connections.

Each session runs two read loops:

- client -> backend: every byte is forwarded unchanged from the first byte on.
- backend -> client: bytes go through the handshake parser until the backend's
  response head is complete; the head is emitted once, and from then on bytes
  are forwarded unchanged.

Either loop ending tears the session down exactly once. A client-initiated
teardown half-closes the backend and lets it drain. A backend-initiated one
first flushes what was already relayed to the client, then closes it; the client
is aborted instead when the head never completed or the flush fails, since no
well-formed HTTP response is left to send.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from uuid import UUID, uuid4

import structlog

from uptunnel.core.exceptions import PeerClosed, ProtocolParseError, TransportError
from uptunnel.observability.metrics import (
    ACTIVE_TUNNELS,
    BYTES_RELAYED,
    HANDSHAKE_RESPONSES,
    TUNNEL_SESSIONS,
)
from uptunnel.protocol.handshake import Complete, HandshakeParser, Malformed
from uptunnel.protocol.headers import SWITCHING_PROTOCOLS, Headers, filter_response_headers
from uptunnel.tunnel.connector import StreamConnection
from uptunnel.tunnel.response import ResponseStream

logger = structlog.get_logger()


class Side(Enum):
    """Which end of a tunnel a signal came from."""

    CLIENT = "client"
    BACKEND = "backend"


@dataclass
class TunnelSession:
    """Both connections of one tunnel plus its switch-over state."""

    client: StreamConnection
    backend: StreamConnection
    response: ResponseStream
    parser: HandshakeParser = field(default_factory=HandshakeParser)
    id: UUID = field(default_factory=uuid4)
    headers_sent: bool = False
    closed_by: Side | None = None
    error: BaseException | None = None
    bytes_up: int = 0
    bytes_down: int = 0

    @property
    def closed(self) -> bool:
        return self.closed_by is not None

    def teardown(
        self, side: Side, error: BaseException | None = None, flushed: bool = False
    ) -> bool:
        """Shut the session down on behalf of ``side``.

        On a backend teardown the client is aborted unless ``flushed`` says every
        relayed byte already reached it, in which case it is closed normally.

        Returns False when the session was already torn down; such calls change nothing.
        """
        if self.closed_by is not None:
            return False
        self.closed_by = side
        self.error = error

        if side is Side.CLIENT:
            self.client.close()
            self.backend.half_close()
            if self.response.started:
                self.response.close()
        else:
            self.backend.close()
            if flushed:
                self.response.close()
            else:
                self.response.abort()
        return True

    def release(self) -> None:
        """Close whatever is still open once both loops have stopped."""
        self.backend.close()
        self.client.close()


class DuplexRelay:
    """Drives a TunnelSession until both directions have stopped."""

    def __init__(
        self,
        session: TunnelSession,
        chunk_size: int = 64 * 1024,
        drain_timeout: float = 5.0,
        preread: bytes = b"",
        header_filter: Callable[[Headers], list[tuple[str, str]]] = filter_response_headers,
    ) -> None:
        self.session = session
        self.chunk_size = chunk_size
        self.drain_timeout = drain_timeout
        self._preread = preread
        self._header_filter = header_filter

    async def run(self) -> None:
        session = self.session
        ACTIVE_TUNNELS.inc()
        upstream = asyncio.create_task(self._pump_client(), name=f"tunnel-{session.id}-up")
        downstream = asyncio.create_task(self._pump_backend(), name=f"tunnel-{session.id}-down")
        try:
            await asyncio.wait({upstream, downstream}, return_when=asyncio.FIRST_COMPLETED)
            if session.closed_by is Side.CLIENT and not downstream.done():
                # backend got a half-close; give it a bounded chance to finish
                await asyncio.wait({downstream}, timeout=self.drain_timeout)
        finally:
            for task in (upstream, downstream):
                if not task.done():
                    task.cancel()
            for task in (upstream, downstream):
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            if not session.closed:
                session.teardown(Side.CLIENT)
            session.release()
            ACTIVE_TUNNELS.dec()
            self._record_outcome()

    def _record_outcome(self) -> None:
        session = self.session
        if isinstance(session.error, ProtocolParseError):
            outcome = "parse_error"
        elif isinstance(session.error, TransportError):
            outcome = f"{session.closed_by.value}_error"
        else:
            outcome = f"{session.closed_by.value}_closed"
        TUNNEL_SESSIONS.labels(outcome=outcome).inc()
        logger.info(
            "Tunnel closed",
            session_id=str(session.id),
            closed_by=session.closed_by.value,
            outcome=outcome,
            status=session.response.status,
            bytes_up=session.bytes_up,
            bytes_down=session.bytes_down,
        )

    def _finish(
        self, side: Side, error: BaseException | None = None, flushed: bool = False
    ) -> None:
        session = self.session
        if error is None:
            error = PeerClosed(f"{side.value} closed the connection")
        elif isinstance(error, OSError):
            cause = error
            error = TransportError(f"{side.value} connection failed: {cause}")
            error.__cause__ = cause

        if not session.teardown(side, error, flushed):
            return

        if isinstance(error, PeerClosed):
            logger.debug("Peer closed", session_id=str(session.id), side=side.value)
        elif isinstance(error, ProtocolParseError):
            logger.warning(
                "Malformed backend response head",
                session_id=str(session.id),
                error=error.message,
            )
        else:
            logger.warning(
                "Tunnel transport error",
                session_id=str(session.id),
                side=side.value,
                error=str(error),
                error_type=type(error.__cause__ or error).__name__,
            )

    async def _forward_to_backend(self, data: bytes) -> bool:
        session = self.session
        try:
            session.backend.write(data)
            await session.backend.drain()
        except OSError as e:
            self._finish(Side.BACKEND, e)
            return False
        session.bytes_up += len(data)
        BYTES_RELAYED.labels(direction="up").inc(len(data))
        return True

    async def _pump_client(self) -> None:
        session = self.session
        reader = session.client.reader

        if self._preread and not await self._forward_to_backend(self._preread):
            return
        self._preread = b""

        while not session.closed:
            try:
                data = await reader.read(self.chunk_size)
            except OSError as e:
                self._finish(Side.CLIENT, e)
                return
            if not data:
                self._finish(Side.CLIENT)
                return
            if not await self._forward_to_backend(data):
                return

    def _switch_over(self, result: Complete) -> bytes:
        """Emit the backend head to the client and return the bytes that followed it."""
        session = self.session
        if result.status == SWITCHING_PROTOCOLS:
            headers = result.headers
        else:
            headers = self._header_filter(result.headers)
        session.response.start(result.status, headers, result.reason, result.version)
        session.headers_sent = True
        HANDSHAKE_RESPONSES.labels(status=str(result.status)).inc()
        logger.debug(
            "Handshake answered",
            session_id=str(session.id),
            status=result.status,
        )
        return session.parser.take_trailing()

    async def _flush_client(self) -> bool:
        """Let bytes already relayed to the client leave before the backend EOF is passed on."""
        session = self.session
        if session.closed or not session.headers_sent:
            return False
        return await session.client.flush(self.drain_timeout)

    async def _pump_backend(self) -> None:
        session = self.session
        reader = session.backend.reader

        while True:
            try:
                data = await reader.read(self.chunk_size)
            except OSError as e:
                self._finish(Side.BACKEND, e)
                return
            if not data:
                self._finish(Side.BACKEND, flushed=await self._flush_client())
                return
            if session.closed:
                # draining after a client-initiated half-close
                continue

            if not session.headers_sent:
                result = session.parser.feed(data)
                if isinstance(result, Malformed):
                    self._finish(Side.BACKEND, ProtocolParseError(result.reason))
                    return
                if not isinstance(result, Complete):
                    continue
                data = self._switch_over(result)

            try:
                session.response.write(data)
                await session.response.drain()
            except OSError as e:
                self._finish(Side.CLIENT, e)
                return
            session.bytes_down += len(data)
            if data:
                BYTES_RELAYED.labels(direction="down").inc(len(data))
