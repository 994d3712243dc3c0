"""Thread-per-connection front server for hosts without an event loop.

Each connection's handler thread reads the request with plain socket calls
framed by h11, then blocks in ``TunnelController.call`` until the request is done.
An upgraded connection therefore holds its thread for the whole session.
"""

from __future__ import annotations

import contextlib
import socket
import socketserver
import threading

import structlog

from uptunnel.core.config import ServerConfig, TunnelConfig
from uptunnel.core.exceptions import ConfigurationError, RequestRejected
from uptunnel.protocol.framing import RequestReader
from uptunnel.protocol.handshake import serialize_response_head
from uptunnel.server.host import build_inbound_request, split_bind
from uptunnel.server.proxy import HttpProxy, ProxyResponse
from uptunnel.tunnel.controller import TunnelController

logger = structlog.get_logger()


def send_response(
    sock: socket.socket,
    status: int,
    headers: list[tuple[str, str]],
    body: bytes = b"",
    reason: str | None = None,
) -> None:
    headers = [*headers, ("Content-Length", str(len(body))), ("Connection", "close")]
    sock.sendall(serialize_response_head(status, headers, reason) + body)


class _ConnectionHandler(socketserver.BaseRequestHandler):
    server: _ThreadingServer

    def handle(self) -> None:
        sock: socket.socket = self.request
        owner = self.server.owner
        remote_addr = self.client_address[0] if self.client_address else None

        try:
            inbound = owner.read_request(sock)
            if inbound is None:
                return
            request = build_inbound_request(inbound, remote_addr, sock, nonblocking=False)

            result = owner.controller.call(request)
            if isinstance(result, ProxyResponse):
                send_response(sock, result.status, result.headers, result.body, result.reason)
        except RequestRejected as e:
            logger.info("Rejected request", remote_addr=remote_addr, error=e.message)
            with contextlib.suppress(OSError):
                send_response(sock, e.status, [("Content-Type", "text/plain")], e.message.encode())
        except ConfigurationError as e:
            logger.error("Host misconfigured", error=e.message)
            with contextlib.suppress(OSError):
                send_response(sock, 500, [("Content-Type", "text/plain")], b"Internal Server Error")
        except OSError as e:
            logger.debug("Client connection failed", remote_addr=remote_addr, error=str(e))


class _ThreadingServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, address: tuple[str, int], owner: BlockingTunnelServer) -> None:
        self.owner = owner
        self.request_queue_size = owner.server_config.backlog
        super().__init__(address, _ConnectionHandler)


class BlockingTunnelServer:
    """Serves HTTP with one thread per connection.

    Degraded mode: every tunnel runs a private event loop inside its handler thread.
    """

    def __init__(
        self,
        config: TunnelConfig,
        server_config: ServerConfig | None = None,
        controller: TunnelController | None = None,
    ) -> None:
        self.config = config
        self.server_config = server_config or ServerConfig(blocking=True)
        self.controller = controller or TunnelController(config, HttpProxy(config))
        self._server: _ThreadingServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def port(self) -> int | None:
        if self._server is None:
            return None
        return self._server.server_address[1]

    def start(self) -> None:
        """Bind and serve from a background thread."""
        logger.warning(
            "Running without a non-blocking runtime; each tunnel holds a thread for its lifetime",
            hint="run without --blocking for the asyncio server",
        )
        self._server = _ThreadingServer(split_bind(self.server_config.bind), self)
        self._thread = threading.Thread(
            target=self._server.serve_forever, name="uptunnel-blocking", daemon=True
        )
        self._thread.start()
        logger.info(
            "Blocking tunnel server started",
            bind=self.server_config.bind,
            remote=self.config.remote,
        )

    def stop(self) -> None:
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("Blocking tunnel server stopped")

    def read_request(self, sock: socket.socket) -> RequestReader | None:
        request = RequestReader(self.config.max_header_size, self.config.max_body_size)
        while True:
            data = sock.recv(self.config.read_chunk_size)
            if request.feed(data):
                return None if request.closed else request
            if request.expects_continue:
                sock.sendall(request.accept_continue())
