"""HTTP server — the terminal WebSocket endpoint plus a health check."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from tourshell import __version__
from tourshell.config import TourshellConfig
from tourshell.pty.registry import SessionRegistry
from tourshell.server.watcher import ExerciseWatcher
from tourshell.transport.hub import Connection, ConnectionHub

logger = logging.getLogger(__name__)


async def _pump(connection: Connection, websocket: WebSocket) -> None:
    """Single writer for a socket: drains the connection's queue in order."""
    try:
        async for frame in connection.outgoing():
            await websocket.send_text(frame)
    except (WebSocketDisconnect, RuntimeError, OSError) as e:
        # Socket went away mid-send; later envelopes are dropped.
        logger.debug("Writer for %s stopped: %s", connection.id, e)
        connection.close()


async def serve_connection(hub: ConnectionHub, websocket: WebSocket) -> None:
    """Run one accepted WebSocket until the client goes away."""
    connection = hub.connect()
    writer = asyncio.create_task(_pump(connection, websocket))
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            if raw is None:
                continue
            await hub.handle_message(connection, raw)
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(connection)
        writer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await writer


def create_app(
    config: TourshellConfig | None = None,
    registry: SessionRegistry | None = None,
) -> FastAPI:
    """Build the app. The registry and hub are owned by this app instance."""
    config = config or TourshellConfig()
    exercises_dir = config.exercises_dir
    if registry is None:
        registry = SessionRegistry.from_config(config.terminal, root=exercises_dir)
    hub = ConnectionHub(
        registry,
        debug=config.server.debug_websocket,
        queue_size=config.server.send_queue_size,
    )
    watcher = ExerciseWatcher(exercises_dir, hub) if config.watch_files else None

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if watcher is not None:
            watcher.start()
        try:
            yield
        finally:
            if watcher is not None:
                watcher.stop()
            hub.close_all()
            await registry.cleanup()

    app = FastAPI(title="tourshell", version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.registry = registry
    app.state.hub = hub
    app.state.watcher = watcher

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "healthy",
            "service": "tourshell",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "sessions": len(registry),
            "connections": len(hub),
        }

    @app.websocket(config.server.ws_path)
    async def terminal_socket(websocket: WebSocket) -> None:
        await websocket.accept()
        await serve_connection(hub, websocket)

    return app
