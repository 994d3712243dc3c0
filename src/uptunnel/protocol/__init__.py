"""Wire-level HTTP pieces: head parsing and header policy."""

from .framing import RequestReader
from .handshake import (
    INCOMPLETE,
    Complete,
    HandshakeParser,
    HandshakeRequest,
    Incomplete,
    Malformed,
    parse_response_head,
    serialize_response_head,
)
from .headers import (
    SWITCHING_PROTOCOLS,
    ForwardingHeaderBuilder,
    build_handshake_headers,
    filter_response_headers,
    is_upgrade_request,
    strip_hop_by_hop,
)

__all__ = [
    "RequestReader",
    "INCOMPLETE",
    "Complete",
    "HandshakeParser",
    "HandshakeRequest",
    "Incomplete",
    "Malformed",
    "parse_response_head",
    "serialize_response_head",
    "SWITCHING_PROTOCOLS",
    "ForwardingHeaderBuilder",
    "build_handshake_headers",
    "filter_response_headers",
    "is_upgrade_request",
    "strip_hop_by_hop",
]
