"""Front servers, generic proxy and admin plane."""

from .admin import AdminServer, create_admin_app
from .blocking import BlockingTunnelServer
from .host import TunnelServer
from .proxy import HttpProxy, ProxyResponse

__all__ = [
    "AdminServer",
    "create_admin_app",
    "BlockingTunnelServer",
    "TunnelServer",
    "HttpProxy",
    "ProxyResponse",
]
