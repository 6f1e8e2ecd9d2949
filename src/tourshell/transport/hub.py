"""Connection hub — one WebSocket per tab, envelopes demultiplexed by type."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import TYPE_CHECKING, Any, AsyncIterator

from tourshell.pty.registry import CheckResult, CreateResult
from tourshell.pty.session import SpawnError
from tourshell.transport.protocol import (
    Envelope,
    EnvelopeType,
    Heartbeat,
    MalformedEnvelope,
    TerminalAction,
    TerminalEvent,
    TerminalReply,
    TerminalRequest,
    encode,
    notification,
    parse_client_envelope,
)
from tourshell.workspace import resolve_exercise_dir

if TYPE_CHECKING:
    from tourshell.pty.registry import SessionRegistry

logger = logging.getLogger(__name__)

# Envelope types the UI reports for bookkeeping handled elsewhere.
_ACKNOWLEDGED_TYPES = {
    EnvelopeType.EXERCISE_VIEW,
    EnvelopeType.CODE_EXECUTION,
    EnvelopeType.PROGRESS_UPDATE,
}


def _now_ms() -> int:
    return int(time.time() * 1000)


class Connection:
    """The server side of one tab's WebSocket.

    Envelopes are serialized in ``send()`` and queued for a single writer
    that drains ``outgoing()``, so every envelope reaches the socket as one
    whole frame, in the order it was sent. Delivery is at-most-once: once
    the connection is closed, or while ``max_queued`` frames are waiting on
    a stalled writer, sends are dropped.
    """

    def __init__(
        self, connection_id: str | None = None, max_queued: int = 1024
    ) -> None:
        self.id = connection_id or uuid.uuid4().hex[:8]
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=max_queued)
        self._closed = False
        self.dropped = 0

    @property
    def open(self) -> bool:
        return not self._closed

    def send(self, envelope: Envelope | dict[str, Any]) -> bool:
        """Queue an envelope. Returns False (and drops it) if closed or full."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(encode(envelope))
        except asyncio.QueueFull:
            if not self.dropped:
                logger.warning("Send queue full for %s; dropping frames", self.id)
            self.dropped += 1
            return False
        if self.dropped:
            logger.info("Dropped %d frames for %s", self.dropped, self.id)
            self.dropped = 0
        return True

    def close(self) -> None:
        """Stop accepting envelopes and end ``outgoing()``."""
        if self._closed:
            return
        self._closed = True
        if self._queue.full():
            # The writer is stalled; what it has not taken is never sent.
            self.pending()
        self._queue.put_nowait(None)

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    async def outgoing(self) -> AsyncIterator[str]:
        """Yield queued frames until the connection is closed."""
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame

    def pending(self) -> list[str]:
        """Remove and return frames queued but not yet written."""
        frames = []
        while not self._queue.empty():
            frame = self._queue.get_nowait()
            if frame is not None:
                frames.append(frame)
        return frames

    def __repr__(self) -> str:
        return f"Connection(id={self.id!r}, open={self.open})"


class ConnectionHub:
    """Tracks open connections and dispatches their envelopes.

    Terminal envelopes go to the session registry; replies are addressed to
    the requesting connection only. ``broadcast`` is for notifications
    (file changes and the like), never terminal output.
    """

    def __init__(
        self, registry: SessionRegistry, debug: bool = False, queue_size: int = 1024
    ) -> None:
        self._registry = registry
        self._debug = debug
        self._queue_size = queue_size
        self._connections: dict[str, Connection] = {}

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def connections(self) -> list[Connection]:
        return list(self._connections.values())

    def connect(self, connection: Connection | None = None) -> Connection:
        """Register a newly accepted connection."""
        connection = connection or Connection(max_queued=self._queue_size)
        self._connections[connection.id] = connection
        logger.info("Client connected: %s", connection.id)
        return connection

    def disconnect(self, connection: Connection) -> None:
        """Forget a connection; its sessions stay alive, unbound."""
        if self._connections.pop(connection.id, None) is None:
            return
        connection.close()
        dropped = connection.pending()
        if dropped:
            logger.debug(
                "Dropped %d unsent frames for %s", len(dropped), connection.id
            )
        self._registry.detach(connection)
        logger.info("Client disconnected: %s", connection.id)

    def broadcast(self, envelope: Envelope | dict[str, Any]) -> int:
        """Send to every open connection. Returns how many accepted it."""
        delivered = 0
        for connection in list(self._connections.values()):
            if connection.send(envelope):
                delivered += 1
        return delivered

    def close_all(self) -> None:
        for connection in list(self._connections.values()):
            self.disconnect(connection)

    # ------------------------------------------------------------------
    # Inbound dispatch
    # ------------------------------------------------------------------

    async def handle_message(self, connection: Connection, raw: str | bytes) -> None:
        """Parse and dispatch one inbound frame. Never raises."""
        try:
            envelope = parse_client_envelope(raw)
        except MalformedEnvelope as e:
            logger.warning("Dropping malformed envelope from %s: %s", connection.id, e)
            return

        if self._debug:
            logger.debug("Received %s envelope from %s", envelope.type, connection.id)

        if isinstance(envelope, TerminalRequest):
            await self._handle_terminal(connection, envelope)
        elif isinstance(envelope, Heartbeat):
            self._handle_heartbeat(connection, envelope)
        elif envelope.type in _ACKNOWLEDGED_TYPES:
            if self._debug:
                logger.debug("%s from connection %s", envelope.type, connection.id)
        else:
            logger.warning("Unknown envelope type from %s: %s", connection.id, envelope.type)

    def _handle_heartbeat(self, connection: Connection, heartbeat: Heartbeat) -> None:
        now = _now_ms()
        connection.send(
            notification(
                EnvelopeType.HEARTBEAT_RESPONSE,
                timestamp=heartbeat.timestamp if heartbeat.timestamp is not None else now,
                server_time=now,
            )
        )

    async def _handle_terminal(
        self, connection: Connection, request: TerminalRequest
    ) -> None:
        action = request.action
        session_id = request.session_id
        if session_id is None:
            if action is not TerminalAction.CREATE:
                logger.warning(
                    "Terminal %s without sessionId from %s", action, connection.id
                )
                return
            session_id = uuid.uuid4().hex

        if self._debug:
            logger.debug("Terminal %s for %s via %s", action, session_id, connection.id)

        try:
            if action is TerminalAction.CREATE:
                await self._create(connection, session_id, request)
            elif action is TerminalAction.CHECK:
                result = await self._registry.check(session_id, connection)
                event = (
                    TerminalEvent.EXISTS
                    if result is CheckResult.EXISTS
                    else TerminalEvent.NOT_FOUND
                )
                connection.send(TerminalReply(action=event, session_id=session_id))
            elif action is TerminalAction.INPUT:
                if request.input:
                    self._registry.input(session_id, request.input)
            elif action is TerminalAction.RESIZE:
                if request.cols is None or request.rows is None:
                    logger.warning("Resize for %s without dimensions", session_id)
                    return
                self._registry.resize(session_id, request.cols, request.rows)
            elif action is TerminalAction.DESTROY:
                self._registry.destroy(session_id)
        except SpawnError as e:
            logger.error("Failed to start terminal %s: %s", session_id, e)
            self._send_error(connection, session_id, str(e))
        except Exception as e:
            logger.exception("Error handling terminal %s for %s", action, session_id)
            self._send_error(connection, session_id, f"Internal error: {e}")

    async def _create(
        self, connection: Connection, session_id: str, request: TerminalRequest
    ) -> None:
        cwd = None
        if request.exercise:
            try:
                cwd = resolve_exercise_dir(self._registry.root, request.exercise)
            except ValueError as e:
                self._send_error(connection, session_id, str(e))
                return

        result = await self._registry.create(
            session_id, request.cols, request.rows, connection, cwd=cwd
        )
        event = (
            TerminalEvent.CREATED
            if result is CreateResult.CREATED
            else TerminalEvent.EXISTS
        )
        connection.send(TerminalReply(action=event, session_id=session_id))

    @staticmethod
    def _send_error(connection: Connection, session_id: str, message: str) -> None:
        connection.send(
            TerminalReply(
                action=TerminalEvent.ERROR, session_id=session_id, message=message
            )
        )

    def __len__(self) -> int:
        return len(self._connections)
