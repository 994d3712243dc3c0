"""Generic HTTP proxy for requests that do not ask for an upgrade."""

from __future__ import annotations

import contextlib
import json
from dataclasses import dataclass, field

import httpx
import structlog
from multidict import CIMultiDict

from uptunnel.core.config import TunnelConfig
from uptunnel.core.exceptions import BackendUnavailable
from uptunnel.observability.metrics import PROXY_REQUESTS, bucket_status
from uptunnel.protocol.headers import ForwardingHeaderBuilder, strip_hop_by_hop
from uptunnel.tunnel.request import BackendTarget, InboundRequest, resolve_target

logger = structlog.get_logger()

# The body is buffered decoded; the host recomputes its framing.
_RESPONSE_SKIP_HEADERS = frozenset({"content-length", "content-encoding"})


@dataclass
class ProxyResponse:
    """A fully buffered backend response."""

    status: int
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytes = b""
    reason: str | None = None


def _error_response(status: int, message: str, code: str) -> ProxyResponse:
    return ProxyResponse(
        status=status,
        headers=[("Content-Type", "application/json")],
        body=json.dumps({"error": message, "code": code}).encode(),
    )


class HttpProxy:
    """Forwards ordinary requests to the configured remote with httpx.

    Redirects are returned to the client, never followed here. Without ``start``
    every call uses a short-lived client, which keeps the proxy usable from
    blocking hosts that run a fresh event loop per request.
    """

    def __init__(
        self,
        config: TunnelConfig,
        forwarding: ForwardingHeaderBuilder | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.forwarding = forwarding or ForwardingHeaderBuilder(
            preserve_host_header=config.preserve_host_header,
            rewrite_origin=config.rewrite_origin,
        )
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _create_client(self) -> httpx.AsyncClient:
        # httpx uses None for no timeout
        timeout = httpx.Timeout(self.config.proxy_timeout, connect=self.config.connect_timeout)
        return httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=False,
            verify=self.config.verify_tls,
            transport=self._transport,
        )

    async def start(self) -> None:
        if self._client is None:
            self._client = self._create_client()

    async def close(self) -> None:
        if self._client is not None:
            with contextlib.suppress(Exception):
                await self._client.aclose()
            self._client = None

    async def handle(self, request: InboundRequest) -> ProxyResponse:
        if self._client is not None:
            response = await self._forward(self._client, request)
        else:
            async with self._create_client() as client:
                response = await self._forward(client, request)
        PROXY_REQUESTS.labels(method=request.method, status=bucket_status(response.status)).inc()
        return response

    def build_request_headers(
        self, request: InboundRequest, target: BackendTarget
    ) -> list[tuple[str, str]]:
        headers = strip_hop_by_hop(request.headers)
        headers.popall("Content-Length", None)
        # the body was read in full before forwarding
        headers.popall("Expect", None)
        forwarding = self.forwarding.build(request, target)
        for name in set(forwarding.keys()):
            headers.popall(name, None)
        headers.extend(forwarding)
        return list(headers.items())

    async def _forward(self, client: httpx.AsyncClient, request: InboundRequest) -> ProxyResponse:
        try:
            target = resolve_target(self.config.remote, request.path, request.query_string)
        except BackendUnavailable as e:
            logger.warning("Invalid remote", remote=self.config.remote, error=e.message)
            return _error_response(502, "Bad Gateway", e.code)

        try:
            resp = await client.request(
                request.method,
                target.url,
                headers=self.build_request_headers(request, target),
                content=request.body or None,
            )
        except httpx.ConnectError as e:
            logger.warning("Backend connection failed", url=target.url, error=str(e))
            return _error_response(502, "Bad Gateway", "BACKEND_UNAVAILABLE")
        except httpx.TimeoutException as e:
            logger.warning("Backend request timeout", url=target.url, error=str(e))
            return _error_response(504, "Gateway Timeout", "BACKEND_TIMEOUT")
        except httpx.RequestError as e:
            logger.error("Proxy request error", url=target.url, error=str(e))
            return _error_response(502, "Bad Gateway", "PROXY_ERROR")

        raw_headers = CIMultiDict(
            (name.decode("latin-1"), value.decode("latin-1")) for name, value in resp.headers.raw
        )
        headers = [
            (name, value)
            for name, value in strip_hop_by_hop(raw_headers).items()
            if name.lower() not in _RESPONSE_SKIP_HEADERS
        ]
        logger.debug(
            "Proxied request",
            method=request.method,
            path=request.path_qs,
            status=resp.status_code,
            bytes=len(resp.content),
        )
        return ProxyResponse(
            status=resp.status_code,
            headers=headers,
            body=resp.content,
            reason=resp.reason_phrase,
        )
