"""uptunnel - reverse proxy for HTTP protocol upgrades."""

__version__ = "0.1.0"
