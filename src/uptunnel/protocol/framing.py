"""Inbound request framing for the front servers, on top of h11."""

from __future__ import annotations

import h11
from multidict import CIMultiDict

from uptunnel.core.exceptions import RequestRejected


class RequestReader:
    """Reads one inbound request from a byte stream.

    Feed bytes as they arrive, and ``b""`` at end of stream, until ``feed``
    returns True. h11 handles the head, Content-Length and chunked bodies. For an
    upgrade request h11 stops after the request, and whatever the client sent
    past it is kept in ``trailing`` for the tunnel.
    """

    def __init__(
        self, max_header_size: int = 64 * 1024, max_body_size: int = 64 * 1024 * 1024
    ) -> None:
        self._conn = h11.Connection(h11.SERVER, max_incomplete_event_size=max_header_size)
        self.max_body_size = max_body_size
        self.request: h11.Request | None = None
        self.closed = False
        self.trailing = b""
        self._body = bytearray()

    def feed(self, data: bytes) -> bool:
        """Consume ``data``; True once the request is complete or the client left first.

        Raises:
            RequestRejected: If the bytes are not a valid request or the body is too large.
        """
        self._conn.receive_data(data)
        while True:
            try:
                event = self._conn.next_event()
            except h11.RemoteProtocolError as e:
                raise RequestRejected(str(e), e.error_status_hint) from e

            if event is h11.NEED_DATA:
                if not data:
                    raise RequestRejected("Connection closed before the request was complete")
                return False
            if event is h11.PAUSED or isinstance(event, h11.EndOfMessage):
                self.trailing = bytes(self._conn.trailing_data[0])
                return True
            if isinstance(event, h11.ConnectionClosed):
                self.closed = True
                return True
            if isinstance(event, h11.Request):
                self.request = event
            elif isinstance(event, h11.Data):
                self._body += event.data
                if len(self._body) > self.max_body_size:
                    raise RequestRejected(
                        f"Request body exceeds {self.max_body_size} bytes", status=413
                    )

    @property
    def expects_continue(self) -> bool:
        return self._conn.they_are_waiting_for_100_continue

    def accept_continue(self) -> bytes:
        """Bytes of the interim ``100 Continue`` the client is waiting for."""
        return self._conn.send(h11.InformationalResponse(status_code=100, headers=[]))

    @property
    def method(self) -> str:
        return self.request.method.decode("ascii")

    @property
    def target(self) -> str:
        return self.request.target.decode("latin-1")

    @property
    def path(self) -> str:
        return self.target.partition("?")[0]

    @property
    def query_string(self) -> str:
        return self.target.partition("?")[2]

    @property
    def version(self) -> str:
        return f"HTTP/{self.request.http_version.decode('ascii')}"

    @property
    def headers(self) -> CIMultiDict[str]:
        # raw_items keeps the client's header name casing
        return CIMultiDict(
            (name.decode("latin-1"), value.decode("latin-1"))
            for name, value in self.request.headers.raw_items()
        )

    @property
    def body(self) -> bytes:
        return bytes(self._body)
