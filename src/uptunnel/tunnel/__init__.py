"""Upgrade tunnel core: connect, handshake, relay."""

from .connector import BackendConnector, StreamConnection
from .controller import TunnelController
from .relay import DuplexRelay, Side, TunnelSession
from .request import BackendTarget, ClientIO, InboundRequest, resolve_target
from .response import ResponseStream

__all__ = [
    "BackendConnector",
    "StreamConnection",
    "TunnelController",
    "DuplexRelay",
    "Side",
    "TunnelSession",
    "BackendTarget",
    "ClientIO",
    "InboundRequest",
    "resolve_target",
    "ResponseStream",
]
