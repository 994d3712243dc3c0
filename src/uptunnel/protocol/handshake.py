"""Incremental HTTP/1.x head parsing and serialization.

The parser here works on the cumulative bytes seen so far on a stream that has
no length framing. It looks for the blank line that ends a header block and
report one of three outcomes:

- ``Incomplete``: the terminator has not arrived yet, feed more bytes.
- ``Complete``: status line, headers, and the number of bytes the head
  occupies, so whatever follows can be forwarded untouched.
- ``Malformed``: the head can never become valid. This is terminal.

Parsing is a pure function of the buffer: feeding a stream in fragments and
parsing the concatenation once give the same outcome and offset.

Only the head is decoded (as Latin-1). Bytes after it are never inspected.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from http import HTTPStatus

from multidict import CIMultiDict

DEFAULT_MAX_HEAD_SIZE = 64 * 1024

# Blank line after the header lines; LF-only endings are tolerated.
_HEAD_END_RE = re.compile(rb"\r?\n\r?\n")
_LINE_SPLIT_RE = re.compile(r"\r?\n")
_STATUS_LINE_RE = re.compile(r"HTTP/(\d)\.(\d) +(\d{3})(?: +(.*))?\Z")
_TOKEN_RE = re.compile(r"[!#$%&'*+\-.^_`|~0-9A-Za-z]+\Z")


class Incomplete:
    """More bytes are needed before the head can be parsed."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "INCOMPLETE"


INCOMPLETE = Incomplete()


@dataclass(frozen=True)
class Malformed:
    """The head is invalid. Never retried."""

    reason: str


@dataclass(frozen=True)
class Complete:
    """A parsed response head."""

    status: int
    reason: str
    version: str
    headers: CIMultiDict[str]
    consumed: int


ParseResult = Incomplete | Complete | Malformed


def _split_head(
    buffer: bytes | bytearray, max_size: int
) -> tuple[list[str], int] | Incomplete | Malformed:
    match = _HEAD_END_RE.search(buffer)
    if match is None:
        if len(buffer) > max_size:
            return Malformed(f"head exceeds {max_size} bytes")
        return INCOMPLETE
    if match.end() > max_size:
        return Malformed(f"head exceeds {max_size} bytes")
    text = bytes(buffer[: match.start()]).decode("latin-1")
    return _LINE_SPLIT_RE.split(text), match.end()


def _first_line(buffer: bytes | bytearray) -> str | None:
    end = buffer.find(b"\n")
    if end == -1:
        return None
    return bytes(buffer[:end]).rstrip(b"\r").decode("latin-1")


def _parse_fields(lines: list[str]) -> CIMultiDict[str] | Malformed:
    pairs: list[list[str]] = []
    for line in lines:
        if line[:1] in (" ", "\t"):
            # obs-fold continuation
            if not pairs:
                return Malformed("continuation line before first header")
            pairs[-1][1] = f"{pairs[-1][1]} {line.strip()}".strip()
            continue
        name, sep, value = line.partition(":")
        if not sep or not _TOKEN_RE.match(name):
            return Malformed(f"invalid header line: {line[:80]!r}")
        pairs.append([name, value.strip()])
    return CIMultiDict((name, value) for name, value in pairs)


def parse_response_head(
    buffer: bytes | bytearray, max_size: int = DEFAULT_MAX_HEAD_SIZE
) -> ParseResult:
    """Parse a response head from the start of ``buffer``."""
    first = _first_line(buffer)
    if first is not None and not _STATUS_LINE_RE.match(first):
        return Malformed(f"invalid status line: {first[:80]!r}")

    split = _split_head(buffer, max_size)
    if isinstance(split, (Incomplete, Malformed)):
        return split
    lines, consumed = split

    status_match = _STATUS_LINE_RE.match(lines[0])
    if status_match is None:
        return Malformed(f"invalid status line: {lines[0][:80]!r}")
    major, minor, status, reason = status_match.groups()

    headers = _parse_fields(lines[1:])
    if isinstance(headers, Malformed):
        return headers

    return Complete(
        status=int(status),
        reason=(reason or "").strip(),
        version=f"HTTP/{major}.{minor}",
        headers=headers,
        consumed=consumed,
    )


class HandshakeParser:
    """Parse state for the backend's answer to a handshake.

    ``feed`` appends to the accumulated buffer and re-parses it. Once the head
    is complete the buffer is released; once it is malformed every later call
    returns the same ``Malformed`` without looking at new bytes.
    """

    def __init__(self, max_size: int = DEFAULT_MAX_HEAD_SIZE) -> None:
        self.max_size = max_size
        self._buffer = bytearray()
        self._result: Complete | Malformed | None = None
        self._trailing = b""

    def parse(self, buffer: bytes | bytearray) -> ParseResult:
        return parse_response_head(buffer, self.max_size)

    def feed(self, data: bytes) -> ParseResult:
        if self._result is not None:
            return self._result
        self._buffer += data
        result = self.parse(self._buffer)
        if isinstance(result, Complete):
            self._trailing = bytes(self._buffer[result.consumed :])
            self._buffer = bytearray()
            self._result = result
        elif isinstance(result, Malformed):
            self._buffer = bytearray()
            self._result = result
        return result

    def take_trailing(self) -> bytes:
        """Return (once) the bytes that followed the head in the buffer."""
        trailing, self._trailing = self._trailing, b""
        return trailing

    @property
    def done(self) -> bool:
        return self._result is not None

    @property
    def buffered(self) -> int:
        return len(self._buffer)


def _reason_for(status: int) -> str:
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return ""


def serialize_head(start_line: str, headers: list[tuple[str, str]] | CIMultiDict[str]) -> bytes:
    items = headers.items() if isinstance(headers, CIMultiDict) else headers
    lines = [start_line]
    lines.extend(f"{name}: {value}" for name, value in items)
    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")


def serialize_response_head(
    status: int,
    headers: list[tuple[str, str]] | CIMultiDict[str],
    reason: str | None = None,
    version: str = "HTTP/1.1",
) -> bytes:
    if not reason:
        reason = _reason_for(status)
    return serialize_head(f"{version} {status} {reason}".rstrip(), headers)


@dataclass(frozen=True)
class HandshakeRequest:
    """The upgrade request sent to the backend. Serialized once."""

    target: str
    headers: CIMultiDict[str]
    version: str = "HTTP/1.1"
    method: str = field(default="GET")

    def to_bytes(self) -> bytes:
        return serialize_head(f"{self.method} {self.target} {self.version}", self.headers)
