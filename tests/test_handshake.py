"""Tests for incremental HTTP head parsing."""

from __future__ import annotations

import pytest
from multidict import CIMultiDict

from uptunnel.protocol.handshake import (
    INCOMPLETE,
    Complete,
    HandshakeParser,
    HandshakeRequest,
    Malformed,
    parse_response_head,
    serialize_response_head,
)

SWITCHING = (
    b"HTTP/1.1 101 Switching Protocols\r\n"
    b"Upgrade: websocket\r\n"
    b"Connection: Upgrade\r\n"
    b"Sec-WebSocket-Accept: s3pPLMBiTxaQ9kYGzzhZRbK+xOo=\r\n"
    b"\r\n"
)


class TestParseResponseHead:
    """Test parse_response_head outcomes."""

    def test_complete_head(self) -> None:
        result = parse_response_head(SWITCHING)
        assert isinstance(result, Complete)
        assert result.status == 101
        assert result.reason == "Switching Protocols"
        assert result.version == "HTTP/1.1"
        assert result.headers["upgrade"] == "websocket"
        assert result.consumed == len(SWITCHING)

    def test_incomplete_without_terminator(self) -> None:
        buffer = b"HTTP/1.1 101 Switching Protocols\r\nUpgrade: ws\r\n"
        assert parse_response_head(buffer) is INCOMPLETE

    def test_empty_buffer_is_incomplete(self) -> None:
        assert parse_response_head(b"") is INCOMPLETE

    def test_consumed_excludes_trailing_bytes(self) -> None:
        """Bytes after the blank line are not part of the head."""
        result = parse_response_head(SWITCHING + b"\x81\x05hello")
        assert isinstance(result, Complete)
        assert result.consumed == len(SWITCHING)

    def test_repeated_headers_kept_in_order(self) -> None:
        data = (
            b"HTTP/1.1 200 OK\r\n"
            b"Set-Cookie: a=1\r\n"
            b"Content-Type: text/plain\r\n"
            b"Set-Cookie: b=2\r\n"
            b"\r\n"
        )
        result = parse_response_head(data)
        assert isinstance(result, Complete)
        assert result.headers.getall("Set-Cookie") == ["a=1", "b=2"]
        assert list(result.headers.keys()) == ["Set-Cookie", "Content-Type", "Set-Cookie"]

    def test_header_names_case_insensitive(self) -> None:
        result = parse_response_head(b"HTTP/1.1 101 OK\r\nuPgRaDe: chat\r\n\r\n")
        assert isinstance(result, Complete)
        assert result.headers["UPGRADE"] == "chat"

    def test_lf_only_line_endings(self) -> None:
        data = b"HTTP/1.1 101 Switching Protocols\nUpgrade: websocket\n\nrest"
        result = parse_response_head(data)
        assert isinstance(result, Complete)
        assert result.headers["Upgrade"] == "websocket"
        assert data[result.consumed :] == b"rest"

    def test_status_without_reason(self) -> None:
        result = parse_response_head(b"HTTP/1.1 101\r\n\r\n")
        assert isinstance(result, Complete)
        assert result.status == 101
        assert result.reason == ""

    def test_obs_fold_joined(self) -> None:
        result = parse_response_head(b"HTTP/1.1 200 OK\r\nX-Long: one\r\n  two\r\n\r\n")
        assert isinstance(result, Complete)
        assert result.headers["X-Long"] == "one two"

    def test_invalid_status_line_is_malformed(self) -> None:
        result = parse_response_head(b"SSH-2.0-OpenSSH_9.6\r\n\r\n")
        assert isinstance(result, Malformed)

    def test_invalid_status_line_detected_before_terminator(self) -> None:
        """A bad first line is reported as soon as it is complete."""
        result = parse_response_head(b"garbage here\r\nmore")
        assert isinstance(result, Malformed)

    def test_invalid_header_line_is_malformed(self) -> None:
        result = parse_response_head(b"HTTP/1.1 101 OK\r\nno colon here\r\n\r\n")
        assert isinstance(result, Malformed)

    def test_oversized_head_is_malformed(self) -> None:
        data = b"HTTP/1.1 101 OK\r\nX-Pad: " + b"a" * 200
        assert isinstance(parse_response_head(data, max_size=100), Malformed)

    def test_head_at_size_limit_is_complete(self) -> None:
        result = parse_response_head(SWITCHING, max_size=len(SWITCHING))
        assert isinstance(result, Complete)


class TestIncrementalEquivalence:
    """Feeding in fragments gives the same answer as parsing the whole buffer."""

    @pytest.mark.parametrize(
        "stream",
        [
            SWITCHING + b"\x81\x02hi",
            b"HTTP/1.1 200 OK\nSet-Cookie: a=1\nSet-Cookie: b=2\n\nbody",
            b"HTTP/1.0 404 Not Found\r\nContent-Length: 3\r\n\r\nnop",
        ],
    )
    def test_every_split_point(self, stream: bytes) -> None:
        whole = parse_response_head(stream)
        assert isinstance(whole, Complete)

        for split in range(len(stream) + 1):
            parser = HandshakeParser()
            first = parser.feed(stream[:split])
            result = first if isinstance(first, Complete) else parser.feed(stream[split:])
            assert isinstance(result, Complete), split
            assert result.status == whole.status
            assert list(result.headers.items()) == list(whole.headers.items())
            assert result.consumed == whole.consumed

    def test_byte_at_a_time(self) -> None:
        stream = SWITCHING + b"payload"
        parser = HandshakeParser()
        results = [parser.feed(stream[i : i + 1]) for i in range(len(stream))]

        assert all(r is INCOMPLETE for r in results[: len(SWITCHING) - 1])
        complete = results[len(SWITCHING) - 1]
        assert isinstance(complete, Complete)
        assert parser.take_trailing() == b""

    def test_trailing_bytes_returned_once(self) -> None:
        parser = HandshakeParser()
        parser.feed(SWITCHING[:10])
        parser.feed(SWITCHING[10:] + b"\x81\x02hi")
        assert parser.done
        assert parser.take_trailing() == b"\x81\x02hi"
        assert parser.take_trailing() == b""

    def test_malformed_is_terminal(self) -> None:
        parser = HandshakeParser()
        first = parser.feed(b"nonsense\r\n")
        assert isinstance(first, Malformed)
        assert parser.feed(SWITCHING) is first

    def test_buffer_released_after_complete(self) -> None:
        parser = HandshakeParser()
        parser.feed(SWITCHING)
        assert parser.buffered == 0


class TestSerialization:
    """Test head serialization."""

    def test_response_head_default_reason(self) -> None:
        data = serialize_response_head(502, [("Content-Type", "text/plain")])
        assert data == b"HTTP/1.1 502 Bad Gateway\r\nContent-Type: text/plain\r\n\r\n"

    def test_response_head_keeps_reason(self) -> None:
        data = serialize_response_head(101, [], reason="Web Socket Protocol Handshake")
        assert data.startswith(b"HTTP/1.1 101 Web Socket Protocol Handshake\r\n")

    def test_reparse_keeps_repeated_headers(self) -> None:
        headers = [("Set-Cookie", "a=1"), ("Set-Cookie", "b=2")]
        result = parse_response_head(serialize_response_head(200, headers))
        assert isinstance(result, Complete)
        assert result.headers.getall("Set-Cookie") == ["a=1", "b=2"]

    def test_handshake_request_bytes(self) -> None:
        headers = CIMultiDict([("Host", "backend:9000"), ("Upgrade", "websocket")])
        request = HandshakeRequest(target="/ws?x=1", headers=headers)
        assert request.to_bytes() == (
            b"GET /ws?x=1 HTTP/1.1\r\nHost: backend:9000\r\nUpgrade: websocket\r\n\r\n"
        )
