"""Streaming response to the inbound client."""

from __future__ import annotations

import contextlib

from multidict import CIMultiDict

from uptunnel.protocol.handshake import serialize_response_head
from uptunnel.tunnel.connector import StreamConnection


class ResponseStream:
    """Writes one HTTP response head, then raw bytes, to the client connection.

    After the head is out the body is written as-is: on an upgraded connection
    there is no further HTTP framing. ``close`` and ``abort`` terminate the stream
    at most once between them.
    """

    def __init__(self, connection: StreamConnection) -> None:
        self._connection = connection
        self._started = False
        self._terminated = False
        self.status: int | None = None

    @property
    def started(self) -> bool:
        return self._started

    @property
    def terminated(self) -> bool:
        return self._terminated

    def start(
        self,
        status: int,
        headers: list[tuple[str, str]] | CIMultiDict[str],
        reason: str | None = None,
        version: str = "HTTP/1.1",
    ) -> None:
        if self._started:
            raise RuntimeError("Response head already sent")
        self._started = True
        self.status = status
        self._connection.write(serialize_response_head(status, headers, reason, version))

    def write(self, data: bytes) -> None:
        if not self._started:
            raise RuntimeError("Response head not sent")
        if data and not self._terminated:
            self._connection.write(data)

    async def drain(self) -> None:
        if not self._terminated:
            await self._connection.drain()

    async def respond(
        self,
        status: int,
        headers: list[tuple[str, str]],
        body: bytes = b"",
        reason: str | None = None,
    ) -> None:
        """Send a complete response and close the connection."""
        headers = [*headers, ("Content-Length", str(len(body))), ("Connection", "close")]
        self.start(status, headers, reason)
        self.write(body)
        with contextlib.suppress(ConnectionError):
            await self.drain()
        self.close()

    def close(self) -> None:
        """Finish the stream, flushing what was written."""
        if self._terminated:
            return
        self._terminated = True
        self._connection.close()

    def abort(self) -> None:
        """Tear the connection down without flushing."""
        if self._terminated:
            return
        self._terminated = True
        self._connection.abort()
