"""Server lifecycle: front server plus optional admin plane."""

import asyncio

from rich.console import Console

from uptunnel.core.config import ServerConfig, TunnelConfig
from uptunnel.server.admin import AdminServer
from uptunnel.server.blocking import BlockingTunnelServer
from uptunnel.server.host import TunnelServer

console = Console()


async def run_server(config: TunnelConfig, server_config: ServerConfig):
    """Run until cancelled."""
    admin = AdminServer(server_config.admin_bind) if server_config.admin_bind else None

    if server_config.blocking:
        server = BlockingTunnelServer(config, server_config)
        server.start()
    else:
        server = TunnelServer(config, server_config)
        await server.start()

    try:
        if admin:
            await admin.start()
        console.print("Server started, press Ctrl+C to stop", style="green")

        await asyncio.Event().wait()
    except KeyboardInterrupt:
        console.print("\nShutting down...", style="yellow")
    finally:
        if admin:
            await admin.stop()
        if isinstance(server, BlockingTunnelServer):
            await asyncio.to_thread(server.stop)
        else:
            await server.stop()
