"""Header policy for upgrade detection, handshake construction and response filtering."""

from __future__ import annotations

from typing import TYPE_CHECKING

from multidict import CIMultiDict, CIMultiDictProxy

if TYPE_CHECKING:
    from uptunnel.tunnel.request import BackendTarget, InboundRequest

Headers = CIMultiDict[str] | CIMultiDictProxy[str]

# RFC 7230 hop-by-hop headers, never forwarded on ordinary proxied requests.
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)

# Dropped from a relayed backend head. Framing headers stay because the body
# that follows is relayed byte for byte.
_RESPONSE_DROP_HEADERS = frozenset(
    {
        "status",
        "keep-alive",
        "proxy-connection",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
    }
)

SWITCHING_PROTOCOLS = 101


def is_upgrade_request(headers: Headers) -> bool:
    """True iff the request carries a non-empty Upgrade header.

    Any token counts, not just ``websocket``.
    """
    return any(value.strip() for value in headers.getall("Upgrade", []))


class ForwardingHeaderBuilder:
    """Builds the proxy headers that describe the original request to a backend."""

    def __init__(self, preserve_host_header: bool = False, rewrite_origin: bool = True) -> None:
        self.preserve_host_header = preserve_host_header
        self.rewrite_origin = rewrite_origin

    def build(self, request: InboundRequest, target: BackendTarget) -> CIMultiDict[str]:
        headers: CIMultiDict[str] = CIMultiDict()

        inbound_host = request.headers.get("Host")
        if self.preserve_host_header and inbound_host:
            headers["Host"] = inbound_host
        else:
            headers["Host"] = target.host_port

        if self.rewrite_origin and "Origin" in request.headers:
            scheme = "https" if target.tls else "http"
            headers["Origin"] = f"{scheme}://{target.host_port}"

        if request.remote_addr:
            previous = ", ".join(request.headers.getall("X-Forwarded-For", []))
            headers["X-Forwarded-For"] = (
                f"{previous}, {request.remote_addr}" if previous else request.remote_addr
            )
            headers["X-Real-IP"] = request.remote_addr
        headers["X-Forwarded-Proto"] = request.scheme

        return headers


def build_handshake_headers(
    inbound_headers: Headers,
    forwarding_headers: Headers | None = None,
) -> CIMultiDict[str]:
    """Clone the inbound headers, overlay forwarding headers, then force the upgrade pair.

    ``Upgrade`` keeps the inbound value and ``Connection`` becomes ``Upgrade``. Both are
    applied last so nothing supplied by the forwarding builder can remove them.
    """
    headers = CIMultiDict(inbound_headers)

    if forwarding_headers:
        for name in set(forwarding_headers.keys()):
            headers.popall(name, None)
        headers.extend(forwarding_headers)

    upgrade = inbound_headers.get("Upgrade", "").strip()
    headers.popall("Upgrade", None)
    headers.popall("Connection", None)
    headers["Upgrade"] = upgrade
    headers["Connection"] = "Upgrade"
    return headers


def filter_response_headers(raw_headers: Headers) -> list[tuple[str, str]]:
    """Drop pseudo and proxy-only fields from a backend head, keeping repeats and order."""
    return [
        (name, value)
        for name, value in raw_headers.items()
        if name.lower() not in _RESPONSE_DROP_HEADERS
    ]


def strip_hop_by_hop(headers: Headers) -> CIMultiDict[str]:
    """Remove hop-by-hop headers, including any listed in ``Connection``."""
    listed = {
        token.strip().lower()
        for value in headers.getall("Connection", [])
        for token in value.split(",")
        if token.strip()
    }
    return CIMultiDict(
        (name, value)
        for name, value in headers.items()
        if name.lower() not in HOP_BY_HOP_HEADERS and name.lower() not in listed
    )
