"""Backend connections for upgraded requests."""

from __future__ import annotations

import asyncio
import ssl
import time

import structlog

from uptunnel.core.exceptions import BackendUnavailable
from uptunnel.observability.metrics import CONNECT_DURATION
from uptunnel.tunnel.request import BackendTarget

logger = structlog.get_logger()


class StreamConnection:
    """A reader/writer pair whose close and half-close each happen at most once."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self._closed = False
        self._half_closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def half_closed(self) -> bool:
        return self._half_closed

    def write(self, data: bytes) -> None:
        if self._closed or self._half_closed:
            return
        self.writer.write(data)

    async def drain(self) -> None:
        if self._closed:
            return
        await self.writer.drain()

    async def flush(self, timeout: float | None) -> bool:
        """Wait until everything written so far has left the transport buffer.

        Returns False if the connection failed or ``timeout`` expired first.
        """
        if self._closed:
            return False
        try:
            # with a zero high-water mark drain() returns only once the buffer is empty
            self.writer.transport.set_write_buffer_limits(high=0)
            await asyncio.wait_for(self.writer.drain(), timeout)
        except (OSError, TimeoutError):
            return False
        return True

    def half_close(self) -> None:
        """Stop writing but keep reading until the peer finishes."""
        if self._closed or self._half_closed:
            return
        self._half_closed = True
        if self.writer.can_write_eof():
            try:
                self.writer.write_eof()
            except OSError as e:
                logger.debug("Half-close failed", error=str(e))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.writer.close()

    def abort(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.writer.transport.abort()


class BackendConnector:
    """Makes exactly one connection attempt per call. No retry, no backoff."""

    def __init__(self, connect_timeout: float | None = 30.0, verify_tls: bool = True) -> None:
        self.connect_timeout = connect_timeout or None
        self.verify_tls = verify_tls

    def _ssl_context(self, target: BackendTarget) -> ssl.SSLContext | None:
        if not target.tls:
            return None
        context = ssl.create_default_context()
        if not self.verify_tls:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    async def connect(self, target: BackendTarget) -> StreamConnection:
        """Open a connection to ``target``.

        Raises:
            BackendUnavailable: If the connection cannot be established.
        """
        start = time.monotonic()
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(
                    target.host,
                    target.port,
                    ssl=self._ssl_context(target),
                ),
                timeout=self.connect_timeout,
            )
        except TimeoutError as e:
            raise BackendUnavailable(
                f"Timed out connecting to {target.host_port}", target.host, target.port
            ) from e
        except OSError as e:
            raise BackendUnavailable(
                f"Cannot connect to {target.host_port}: {e.strerror or e}",
                target.host,
                target.port,
            ) from e
        finally:
            CONNECT_DURATION.observe(time.monotonic() - start)

        logger.debug("Backend connected", backend=target.host_port)
        return StreamConnection(reader, writer)
