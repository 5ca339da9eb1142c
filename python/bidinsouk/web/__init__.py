"""HTTP and WebSocket surface for the Bidinsouk auction engine."""

from .api import create_app, run_server, ConnectionManager

__all__ = ["create_app", "run_server", "ConnectionManager"]
