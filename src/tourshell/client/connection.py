"""Client transport — one WebSocket to the server, reconnected with backoff."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from tourshell.transport.protocol import (
    Envelope,
    Heartbeat,
    MalformedEnvelope,
    ServerEnvelope,
    encode,
    parse_server_envelope,
)

logger = logging.getLogger(__name__)

EnvelopeHandler = Callable[[ServerEnvelope], None]
StatusCallback = Callable[[bool], None]
Connector = Callable[[str], Awaitable[Any]]

# Close code for an intentional shutdown; anything else triggers a reconnect.
NORMAL_CLOSURE = 1000


class ReconnectingSocket:
    """A WebSocket that reconnects with exponential backoff.

    The first connection and every reconnect go through the same retry
    policy: ``max_reconnect_attempts`` retries after the initial attempt,
    waiting ``base_delay * 2**(n-1)`` seconds before retry ``n``. A close
    with code 1000 (ours or the server's) ends the loop.

    ``send()`` is synchronous and never blocks: frames go through an
    outbox drained by one writer task per connection. While the socket is
    not open, sends are dropped and return False.
    """

    def __init__(
        self,
        url: str,
        max_reconnect_attempts: int = 5,
        reconnect_base_delay: float = 1.0,
        heartbeat_interval: float = 30.0,
        connector: Connector | None = None,
    ) -> None:
        self.url = url
        self._max_attempts = max_reconnect_attempts
        self._base_delay = reconnect_base_delay
        self._heartbeat_interval = heartbeat_interval
        self._connector = connector or connect
        self._ws: Any = None
        self._outbox: asyncio.Queue[str] | None = None
        self._handlers: dict[str, list[EnvelopeHandler]] = {}
        self._status_callbacks: list[StatusCallback] = []
        self._closing = False
        self._task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def add_handler(self, envelope_type: str, handler: EnvelopeHandler) -> None:
        self._handlers.setdefault(envelope_type, []).append(handler)

    def remove_handler(self, envelope_type: str, handler: EnvelopeHandler) -> None:
        handlers = self._handlers.get(envelope_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def on_status(self, callback: StatusCallback) -> None:
        """Register a callback receiving True on connect, False on loss."""
        self._status_callbacks.append(callback)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    @property
    def open(self) -> bool:
        return self._ws is not None and self._outbox is not None

    def send(self, envelope: Envelope | dict[str, Any]) -> bool:
        outbox = self._outbox
        if self._ws is None or outbox is None:
            logger.debug("WebSocket not connected; dropping %s", envelope)
            return False
        outbox.put_nowait(encode(envelope))
        return True

    async def wait_open(self, attempts: int = 50, interval: float = 0.1) -> bool:
        """Poll until the socket is open. Returns False if it never opens."""
        for _ in range(attempts):
            if self.open:
                return True
            await asyncio.sleep(interval)
        return self.open

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> asyncio.Task[None]:
        """Run the connection loop in the background."""
        if self._task is None or self._task.done():
            self._closing = False
            self._task = asyncio.create_task(self.run(), name="tourshell-socket")
        return self._task

    async def run(self) -> None:
        """Connect, serve, and reconnect until closed or out of attempts."""
        while not self._closing:
            try:
                ws = await self._connect()
            except (OSError, InvalidHandshake, TimeoutError) as e:
                logger.error(
                    "Max reconnection attempts reached for %s: %s", self.url, e
                )
                return

            close_code = await self._serve(ws)
            if self._closing or close_code == NORMAL_CLOSURE:
                return
            logger.warning("WebSocket disconnected (code=%s); reconnecting", close_code)

    async def _connect(self) -> Any:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type((OSError, InvalidHandshake, TimeoutError)),
            stop=stop_after_attempt(self._max_attempts + 1),
            wait=wait_exponential(multiplier=self._base_delay),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                ws = await self._connector(self.url)
        logger.info("WebSocket connected: %s", self.url)
        return ws

    async def _serve(self, ws: Any) -> int | None:
        """Pump one connection until it closes. Returns the close code."""
        self._ws = ws
        self._outbox = asyncio.Queue()
        writer = asyncio.create_task(self._write(ws, self._outbox))
        heartbeat = asyncio.create_task(self._heartbeat())
        self._notify_status(True)
        try:
            while True:
                try:
                    raw = await ws.recv()
                except ConnectionClosed:
                    break
                self._dispatch(raw)
        finally:
            self._ws = None
            self._outbox = None
            for task in (writer, heartbeat):
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            self._notify_status(False)
        return ws.close_code

    async def _write(self, ws: Any, outbox: asyncio.Queue[str]) -> None:
        while True:
            frame = await outbox.get()
            try:
                await ws.send(frame)
            except ConnectionClosed:
                return
            finally:
                outbox.task_done()

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            self.send(Heartbeat(timestamp=int(time.time() * 1000)))

    async def close(self) -> None:
        """Close with code 1000; no reconnect follows."""
        self._closing = True
        ws = self._ws
        if ws is not None:
            if self._outbox is not None:
                # Flush what was sent before close, e.g. a final destroy.
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._outbox.join(), timeout=1.0)
            await ws.close(NORMAL_CLOSURE, "User initiated disconnect")
        elif self._task is not None and not self._task.done():
            self._task.cancel()
        if self._task is not None and self._task is not asyncio.current_task():
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            envelope = parse_server_envelope(raw)
        except MalformedEnvelope as e:
            logger.warning("Failed to parse WebSocket message: %s", e)
            return
        for handler in list(self._handlers.get(envelope.type, [])):
            try:
                handler(envelope)
            except Exception:
                logger.exception("Error in %s message handler", envelope.type)

    def _notify_status(self, connected: bool) -> None:
        for callback in list(self._status_callbacks):
            try:
                callback(connected)
            except Exception:
                logger.exception("Error in connection status callback")
