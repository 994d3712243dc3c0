"""Tests for the duplex relay and session teardown."""

from __future__ import annotations

import asyncio
import os
import socket
from unittest.mock import MagicMock

import pytest

from uptunnel.core.exceptions import PeerClosed, ProtocolParseError
from uptunnel.protocol.handshake import HandshakeParser
from uptunnel.tunnel.connector import StreamConnection
from uptunnel.tunnel.relay import DuplexRelay, Side, TunnelSession
from uptunnel.tunnel.response import ResponseStream

SWITCHING = (
    b"HTTP/1.1 101 Switching Protocols\r\n"
    b"Upgrade: websocket\r\n"
    b"Connection: Upgrade\r\n"
    b"\r\n"
)


async def stream_pair():
    a, b = socket.socketpair()
    near = await asyncio.open_connection(sock=a)
    far = await asyncio.open_connection(sock=b)
    return near, far


async def make_session():
    """Build a session whose client and backend ends are driven by the test."""
    (client_r, client_w), client_peer = await stream_pair()
    (backend_r, backend_w), backend_peer = await stream_pair()
    client = StreamConnection(client_r, client_w)
    session = TunnelSession(
        client=client,
        backend=StreamConnection(backend_r, backend_w),
        response=ResponseStream(client),
        parser=HandshakeParser(),
    )
    return session, client_peer, backend_peer


async def read_to_eof(reader: asyncio.StreamReader) -> bytes:
    chunks = []
    while True:
        try:
            data = await asyncio.wait_for(reader.read(65536), timeout=2)
        except ConnectionError:
            break
        if not data:
            break
        chunks.append(data)
    return b"".join(chunks)


class TestDuplexRelay:
    """End-to-end relay behaviour over socket pairs."""

    @pytest.mark.asyncio
    async def test_handshake_then_raw_bytes(self) -> None:
        session, (client_r, client_w), (backend_r, backend_w) = await make_session()
        relay_task = asyncio.create_task(DuplexRelay(session).run())

        backend_w.write(SWITCHING + b"\x81\x05hello")
        await backend_w.drain()
        received = await asyncio.wait_for(client_r.readexactly(len(SWITCHING) + 7), timeout=2)
        assert received == SWITCHING + b"\x81\x05hello"
        assert session.headers_sent is True

        client_w.write(b"\x81\x02up")
        await client_w.drain()
        assert await asyncio.wait_for(backend_r.readexactly(4), timeout=2) == b"\x81\x02up"

        backend_w.close()
        await asyncio.wait_for(relay_task, timeout=2)
        assert session.closed_by is Side.BACKEND
        assert isinstance(session.error, PeerClosed)
        assert await read_to_eof(client_r) == b""
        client_w.close()

    @pytest.mark.asyncio
    async def test_one_byte_fragments(self) -> None:
        """The head split into single bytes arrives intact and unfiltered."""
        session, (client_r, client_w), (backend_r, backend_w) = await make_session()
        relay_task = asyncio.create_task(DuplexRelay(session, chunk_size=1).run())

        stream = SWITCHING + b"tail"
        for i in range(len(stream)):
            backend_w.write(stream[i : i + 1])
            await backend_w.drain()
            await asyncio.sleep(0)

        assert await asyncio.wait_for(client_r.readexactly(len(stream)), timeout=2) == stream

        client_w.close()
        backend_w.close()
        await asyncio.wait_for(relay_task, timeout=3)

    @pytest.mark.asyncio
    async def test_large_payload_both_directions(self) -> None:
        session, (client_r, client_w), (backend_r, backend_w) = await make_session()
        relay_task = asyncio.create_task(DuplexRelay(session, chunk_size=4096).run())
        down = os.urandom(512 * 1024)
        up = os.urandom(512 * 1024)

        async def send(writer: asyncio.StreamWriter, data: bytes) -> None:
            writer.write(data)
            await writer.drain()

        sender_down = asyncio.create_task(send(backend_w, SWITCHING + down))
        sender_up = asyncio.create_task(send(client_w, up))

        got_down = await asyncio.wait_for(
            client_r.readexactly(len(SWITCHING) + len(down)), timeout=5
        )
        got_up = await asyncio.wait_for(backend_r.readexactly(len(up)), timeout=5)
        await asyncio.gather(sender_down, sender_up)

        assert got_down == SWITCHING + down
        assert got_up == up
        assert session.bytes_up == len(up)
        assert session.bytes_down == len(down)

        backend_w.close()
        await asyncio.wait_for(relay_task, timeout=2)
        client_w.close()

    @pytest.mark.asyncio
    async def test_non_101_head_is_filtered(self) -> None:
        session, (client_r, client_w), (backend_r, backend_w) = await make_session()
        relay_task = asyncio.create_task(DuplexRelay(session).run())

        backend_w.write(
            b"HTTP/1.1 403 Forbidden\r\n"
            b"Keep-Alive: timeout=5\r\n"
            b"Content-Length: 4\r\n"
            b"\r\n"
            b"nope"
        )
        await backend_w.drain()
        expected = b"HTTP/1.1 403 Forbidden\r\nContent-Length: 4\r\n\r\nnope"
        assert await asyncio.wait_for(client_r.readexactly(len(expected)), timeout=2) == expected
        assert session.response.status == 403

        backend_w.close()
        await asyncio.wait_for(relay_task, timeout=2)
        client_w.close()

    @pytest.mark.asyncio
    async def test_custom_header_filter(self) -> None:
        session, (client_r, client_w), (backend_r, backend_w) = await make_session()
        seen = []

        def keep_length_only(headers):
            seen.append(list(headers.items()))
            return [("Content-Length", headers["Content-Length"]), ("X-Proxied", "1")]

        relay_task = asyncio.create_task(
            DuplexRelay(session, header_filter=keep_length_only).run()
        )

        backend_w.write(
            b"HTTP/1.1 404 Not Found\r\n"
            b"Server: backend\r\n"
            b"Content-Length: 2\r\n"
            b"\r\n"
            b"no"
        )
        await backend_w.drain()
        expected = b"HTTP/1.1 404 Not Found\r\nContent-Length: 2\r\nX-Proxied: 1\r\n\r\nno"
        assert await asyncio.wait_for(client_r.readexactly(len(expected)), timeout=2) == expected
        assert seen == [[("Server", "backend"), ("Content-Length", "2")]]

        backend_w.close()
        await asyncio.wait_for(relay_task, timeout=2)
        client_w.close()

    @pytest.mark.asyncio
    async def test_client_close_half_closes_backend(self) -> None:
        session, (client_r, client_w), (backend_r, backend_w) = await make_session()
        relay_task = asyncio.create_task(DuplexRelay(session, drain_timeout=2.0).run())

        backend_w.write(SWITCHING)
        await backend_w.drain()
        await asyncio.wait_for(client_r.readexactly(len(SWITCHING)), timeout=2)

        client_w.write(b"bye")
        await client_w.drain()
        client_w.close()

        # the backend sees the final bytes, then end of stream
        assert await read_to_eof(backend_r) == b"bye"
        assert session.closed_by is Side.CLIENT

        # late backend output is drained, not delivered
        backend_w.write(b"late")
        await backend_w.drain()
        backend_w.close()
        await asyncio.wait_for(relay_task, timeout=3)
        assert session.bytes_down == 0

    @pytest.mark.asyncio
    async def test_malformed_backend_head(self) -> None:
        session, (client_r, client_w), (backend_r, backend_w) = await make_session()
        relay_task = asyncio.create_task(DuplexRelay(session).run())

        backend_w.write(b"SSH-2.0-OpenSSH_9.6\r\n")
        await backend_w.drain()
        await asyncio.wait_for(relay_task, timeout=2)

        assert session.closed_by is Side.BACKEND
        assert isinstance(session.error, ProtocolParseError)
        assert session.headers_sent is False
        assert await read_to_eof(client_r) == b""
        client_w.close()
        backend_w.close()

    @pytest.mark.asyncio
    async def test_backend_closes_before_head(self) -> None:
        session, (client_r, client_w), (backend_r, backend_w) = await make_session()
        relay_task = asyncio.create_task(DuplexRelay(session).run())

        backend_w.write(b"HTTP/1.1 101 Swi")
        await backend_w.drain()
        backend_w.close()
        await asyncio.wait_for(relay_task, timeout=2)

        assert session.closed_by is Side.BACKEND
        assert await read_to_eof(client_r) == b""
        client_w.close()

    @pytest.mark.asyncio
    async def test_backend_close_delivers_pending_bytes_to_slow_client(self) -> None:
        """Bytes still queued for a slow client arrive before its end of stream."""
        a, b = socket.socketpair()
        for sock in (a, b):
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, 4096)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, 4096)
        client_r, client_w = await asyncio.open_connection(sock=a)
        peer_r, peer_w = await asyncio.open_connection(sock=b, limit=1024)
        (backend_r, backend_w), (far_r, far_w) = await stream_pair()
        client = StreamConnection(client_r, client_w)
        session = TunnelSession(
            client=client,
            backend=StreamConnection(backend_r, backend_w),
            response=ResponseStream(client),
        )
        relay_task = asyncio.create_task(DuplexRelay(session, drain_timeout=10.0).run())

        payload = os.urandom(256 * 1024)
        # close() sends everything still buffered before the FIN
        far_w.write(SWITCHING + payload)
        far_w.close()

        async def read_slowly() -> bytes:
            chunks = []
            while True:
                data = await peer_r.read(1024)
                if not data:
                    return b"".join(chunks)
                chunks.append(data)
                await asyncio.sleep(0.0005)

        received = await asyncio.wait_for(read_slowly(), timeout=20)
        await asyncio.wait_for(relay_task, timeout=5)

        assert received == SWITCHING + payload
        assert session.closed_by is Side.BACKEND
        assert session.bytes_down == len(payload)
        peer_w.close()

    @pytest.mark.asyncio
    async def test_preread_forwarded_first(self) -> None:
        session, (client_r, client_w), (backend_r, backend_w) = await make_session()
        relay_task = asyncio.create_task(DuplexRelay(session, preread=b"early").run())

        assert await asyncio.wait_for(backend_r.readexactly(5), timeout=2) == b"early"
        client_w.write(b"later")
        await client_w.drain()
        assert await asyncio.wait_for(backend_r.readexactly(5), timeout=2) == b"later"
        assert session.bytes_up == 10

        backend_w.close()
        await asyncio.wait_for(relay_task, timeout=2)
        client_w.close()


class TestTeardown:
    """Teardown policy against mocked connections."""

    def make_session(self, started: bool = False) -> TunnelSession:
        response = MagicMock()
        response.started = started
        return TunnelSession(client=MagicMock(), backend=MagicMock(), response=response)

    def test_client_teardown_half_closes_backend(self) -> None:
        session = self.make_session()
        assert session.teardown(Side.CLIENT) is True
        session.client.close.assert_called_once()
        session.backend.half_close.assert_called_once()
        session.backend.close.assert_not_called()
        session.response.close.assert_not_called()

    def test_client_teardown_closes_started_response(self) -> None:
        session = self.make_session(started=True)
        session.teardown(Side.CLIENT)
        session.response.close.assert_called_once()

    def test_backend_teardown_aborts_client(self) -> None:
        session = self.make_session(started=True)
        assert session.teardown(Side.BACKEND) is True
        session.backend.close.assert_called_once()
        session.response.abort.assert_called_once()
        session.client.close.assert_not_called()

    def test_flushed_backend_teardown_closes_client(self) -> None:
        session = self.make_session(started=True)
        assert session.teardown(Side.BACKEND, flushed=True) is True
        session.backend.close.assert_called_once()
        session.response.close.assert_called_once()
        session.response.abort.assert_not_called()

    def test_only_first_teardown_counts(self) -> None:
        session = self.make_session()
        error = PeerClosed("client went away")
        assert session.teardown(Side.CLIENT, error) is True
        assert session.teardown(Side.BACKEND, ProtocolParseError("late")) is False
        assert session.teardown(Side.CLIENT) is False

        assert session.closed_by is Side.CLIENT
        assert session.error is error
        session.backend.close.assert_not_called()
        session.response.abort.assert_not_called()
        session.client.close.assert_called_once()
