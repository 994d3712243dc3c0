"""uptunnel CLI - reverse proxy with transparent protocol-upgrade tunnels."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys

import click
import structlog
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

_shutdown_requested = False

BANNER = """
██╗   ██╗██████╗ ████████╗██╗   ██╗███╗   ██╗███╗   ██╗███████╗██╗
██║   ██║██╔══██╗╚══██╔══╝██║   ██║████╗  ██║████╗  ██║██╔════╝██║
██║   ██║██████╔╝   ██║   ██║   ██║██╔██╗ ██║██╔██╗ ██║█████╗  ██║
██║   ██║██╔═══╝    ██║   ██║   ██║██║╚██╗██║██║╚██╗██║██╔══╝  ██║
╚██████╔╝██║        ██║   ╚██████╔╝██║ ╚████║██║ ╚████║███████╗███████╗
 ╚═════╝ ╚═╝        ╚═╝    ╚═════╝ ╚═╝  ╚═══╝╚═╝  ╚═══╝╚══════╝╚══════╝
                 Upgrade-aware reverse proxy
"""

# config file keys that map onto ServerConfig rather than TunnelConfig
_SERVER_KEYS = {"bind", "admin_bind", "blocking", "backlog"}

# serve flags that set a ServerConfig value; the rest come only from a config file
_SERVER_FLAGS = {"bind": "--bind", "admin_bind": "--admin-bind", "blocking": "--blocking"}


def configure_logging(log_level: str, verbose: bool = False) -> None:
    effective_log_level = "debug" if verbose else log_level
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, effective_log_level.upper())
        ),
    )


@click.group()
def main():
    """uptunnel - reverse proxy that tunnels Upgrade requests byte for byte.

    Examples:

        uptunnel serve --remote http://localhost:9000

        uptunnel serve --remote http://localhost:9000/socket.io --bind 0.0.0.0:8080

        uptunnel config show --json

    Use 'uptunnel COMMAND --help' for more info on specific commands.
    """


@main.command()
@click.option(
    "--config", "-c",
    "config_file",
    type=click.Path(exists=True),
    help="Path to YAML or TOML config file",
)
@click.option("--remote", "-r", envvar="UPTUNNEL_REMOTE", help="Backend URL")
@click.option("--bind", "-b", default=None, help="Front bind address (default: 0.0.0.0:8080)")
@click.option("--admin-bind", default=None, help="Bind address for /health and /metrics")
@click.option(
    "--blocking",
    is_flag=True,
    default=False,
    help="Thread per connection instead of the asyncio loop (degraded)",
)
@click.option(
    "--preserve-host",
    is_flag=True,
    default=False,
    help="Forward the inbound Host header instead of the backend host",
)
@click.option(
    "--connect-timeout",
    "-t",
    type=float,
    default=None,
    help="Backend connect timeout in seconds (0 for indefinite). Default: 30s",
)
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="info",
    help="Log level (default: info, use --verbose for debug)",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
def serve(
    config_file: str | None,
    remote: str | None,
    bind: str | None,
    admin_bind: str | None,
    blocking: bool,
    preserve_host: bool,
    connect_timeout: float | None,
    log_level: str,
    verbose: bool,
):
    """Run the proxy.

    Requests carrying an Upgrade header are tunneled to the backend; all
    other requests are proxied as ordinary HTTP.
    """
    from pydantic import ValidationError

    from uptunnel.core.config import (
        ServerConfig,
        TunnelConfig,
        flatten_config,
        load_config_from_file,
    )

    file_config: dict = {}
    if config_file:
        try:
            file_config = flatten_config(load_config_from_file(config_file))
            console.print(f"Loaded config from {config_file}", style="dim")
        except (FileNotFoundError, ValueError) as e:
            console.print(f"[red]Failed to load config: {e}[/red]")
            sys.exit(1)

    tunnel_values = {k: v for k, v in file_config.items() if k not in _SERVER_KEYS}
    server_values = {k: v for k, v in file_config.items() if k in _SERVER_KEYS}

    if remote is not None:
        tunnel_values["remote"] = remote
    if preserve_host:
        tunnel_values["preserve_host_header"] = True
    if connect_timeout is not None:
        tunnel_values["connect_timeout"] = connect_timeout if connect_timeout > 0 else None
    if bind is not None:
        server_values["bind"] = bind
    if admin_bind is not None:
        server_values["admin_bind"] = admin_bind
    if blocking:
        server_values["blocking"] = True

    try:
        config = TunnelConfig(**tunnel_values)
        server_config = ServerConfig(**server_values)
    except ValidationError as e:
        console.print(Panel(f"[red]{e}[/red]", title="Invalid configuration", border_style="red"))
        sys.exit(1)

    configure_logging(log_level, verbose)

    console.print(BANNER, style="cyan")
    console.print(f"Proxying {server_config.bind} -> {config.remote}", style="yellow")
    timeout_str = f"{config.connect_timeout}s" if config.connect_timeout else "indefinite"
    console.print(f"Connect timeout: {timeout_str}", style="dim")
    if config.preserve_host_header:
        console.print("Host header: preserved", style="dim")
    if server_config.admin_bind:
        console.print(f"Admin: {server_config.admin_bind} (/health, /metrics)", style="dim")
    if server_config.blocking:
        console.print("Mode: blocking (one thread per connection)", style="yellow")

    _run_server_with_signal_handling(config, server_config)


def _run_server_with_signal_handling(config, server_config) -> None:
    """Run the server with signal handling for clean Ctrl+C shutdown."""
    from uptunnel.core.exceptions import UptunnelError, format_error_for_user
    from uptunnel.server.main import run_server

    global _shutdown_requested
    _shutdown_requested = False

    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    main_task = loop.create_task(run_server(config, server_config))

    def signal_handler(sig: int, frame: object) -> None:
        """Handle Ctrl+C signal."""
        global _shutdown_requested
        if _shutdown_requested:
            console.print("\n[red]Force shutdown![/red]")
            sys.exit(1)
        _shutdown_requested = True
        console.print("\n[yellow]Shutting down gracefully...[/yellow]")
        main_task.cancel()

    signal.signal(signal.SIGINT, signal_handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, signal_handler)

    exit_code = 0
    try:
        loop.run_until_complete(main_task)
    except (asyncio.CancelledError, KeyboardInterrupt):
        console.print("[green]Server stopped.[/green]")
    except (UptunnelError, OSError, ValueError) as e:
        title = f"Error: {e.code}" if isinstance(e, UptunnelError) else "Server Error"
        console.print(
            Panel(f"[red]{format_error_for_user(e)}[/red]", title=title, border_style="red")
        )
        exit_code = 1
    finally:
        pending = asyncio.all_tasks(loop)
        for task in pending:
            task.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.close()

    if exit_code:
        sys.exit(exit_code)


@main.command()
def version():
    """Show version information."""
    from uptunnel import __version__

    console.print(BANNER, style="cyan")
    console.print(f"[bold]Version:[/bold] {__version__}")
    console.print(f"[bold]Python:[/bold] {sys.version}")


@main.group()
def config():
    """View configuration settings.

    All settings can be configured via environment variables with the
    UPTUNNEL_ prefix. Use these commands to see current values.

    Examples:

        uptunnel config show            # Show all config settings

        uptunnel config show --json     # Machine-readable output
    """
    pass


@config.command("show")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def config_show(json_output: bool):
    """Show current configuration settings.

    Tunnel values come from environment variables or defaults. Server values are
    the defaults that serve flags and config file keys override.
    """
    from uptunnel.core.config import ServerConfig, clear_config, get_config

    clear_config()
    display = get_config().to_display_dict()
    server_display = ServerConfig().model_dump()

    if json_output:
        console.print(json.dumps({**display, "server": server_display}, indent=2))
        return

    console.print(BANNER, style="cyan")
    console.print("[bold]Current Configuration[/bold]\n")

    table = Table(title="Tunnel")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_column("Env Variable", style="dim")

    for key, value in display.items():
        env_var = f"UPTUNNEL_{key.upper()}"
        value_str = str(value) if value is not None else "[dim]None[/dim]"
        table.add_row(key, value_str, env_var)

    console.print(table)

    server_table = Table(title="Server")
    server_table.add_column("Setting", style="cyan")
    server_table.add_column("Value", style="green")
    server_table.add_column("Override", style="dim")

    for key, value in server_display.items():
        override = _SERVER_FLAGS.get(key, "config file")
        value_str = str(value) if value is not None else "[dim]None[/dim]"
        server_table.add_row(key, value_str, override)

    console.print(server_table)


if __name__ == "__main__":
    main()
