"""Server — FastAPI app exposing the terminal WebSocket."""

from tourshell.server.app import create_app, serve_connection

__all__ = ["create_app", "serve_connection"]
