"""Terminal controller — binds one display to one server-side session.

The controller keeps a single session identifier (persisted through a
store so a restarted client reattaches to the same shell) and reconciles
it with the server:

    init ──> persisted id? ──yes──> check ──exists────> BOUND
                 │                    └──not_found──> create
                 └──no──> create ──created──> BOUND

An ``exit`` from the server clears the identifier and respawns after a
short delay; an ``error`` clears it and stays dead until the user acts.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
import shlex
import time
from typing import TYPE_CHECKING, Protocol

from tourshell.transport.protocol import (
    EnvelopeType,
    TerminalAction,
    TerminalEvent,
    TerminalReply,
    TerminalRequest,
)

if TYPE_CHECKING:
    from tourshell.client.connection import ReconnectingSocket
    from tourshell.client.storage import SessionStore
    from tourshell.transport.protocol import ServerEnvelope

logger = logging.getLogger(__name__)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"

EXIT_NOTICE = "\r\n\x1b[31mTerminal session ended. Creating new session...\x1b[0m\r\n"


def new_session_id() -> str:
    """``terminal_<epoch-ms>_<9 base-36 chars>``."""
    suffix = "".join(random.choices(_BASE36, k=9))
    return f"terminal_{int(time.time() * 1000)}_{suffix}"


def error_notice(message: str) -> str:
    return f"\r\n\x1b[31mError: {message}\x1b[0m\r\n"


class SessionState(enum.Enum):
    NO_SESSION = "no_session"
    AWAITING_SERVER = "awaiting_server"
    BOUND = "bound"
    DEAD = "dead"


class Display(Protocol):
    """Anything that can show terminal output."""

    @property
    def cols(self) -> int: ...

    @property
    def rows(self) -> int: ...

    def write(self, text: str) -> None: ...

    def scroll_to_bottom(self) -> None: ...


class TerminalController:
    """Drives one terminal display over a ``ReconnectingSocket``."""

    def __init__(
        self,
        socket: ReconnectingSocket,
        display: Display,
        store: SessionStore,
        respawn_delay: float = 1.0,
        resize_debounce: float = 0.016,
        connect_poll_attempts: int = 50,
        connect_poll_interval: float = 0.1,
    ) -> None:
        self._socket = socket
        self._display = display
        self._store = store
        self._respawn_delay = respawn_delay
        self._resize_debounce = resize_debounce
        self._poll_attempts = connect_poll_attempts
        self._poll_interval = connect_poll_interval

        self.initialized = False
        self.state = SessionState.NO_SESSION
        self._session_id = store.load()
        self._was_connected = False
        self._resize_handle: asyncio.TimerHandle | None = None
        self._respawn_handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task[bool]] = set()

    @property
    def session_id(self) -> str | None:
        return self._session_id

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> bool:
        """Attach to the persisted session or create a new one."""
        if self.initialized:
            if self._session_id is None:
                return await self.create_session()
            return True

        self._socket.add_handler(EnvelopeType.TERMINAL, self.handle_message)
        self._socket.on_status(self._on_status)
        self._was_connected = self._socket.open
        self.initialized = True
        return await self.create_session()

    async def create_session(self) -> bool:
        """Check the persisted session, or create a fresh one.

        Returns False if the socket never opened.
        """
        if not await self._socket.wait_open(self._poll_attempts, self._poll_interval):
            logger.error("Failed to establish WebSocket connection for terminal")
            self._display.write(error_notice("Could not connect to the terminal server"))
            return False

        if self._session_id is not None:
            logger.debug("Checking existing terminal session: %s", self._session_id)
            self.state = SessionState.AWAITING_SERVER
            return self._send(TerminalAction.CHECK)

        self._session_id = new_session_id()
        self._store.save(self._session_id)
        logger.debug(
            "Creating terminal session %s (%dx%d)",
            self._session_id,
            self._display.cols,
            self._display.rows,
        )
        self.state = SessionState.AWAITING_SERVER
        return self._send(
            TerminalAction.CREATE, cols=self._display.cols, rows=self._display.rows
        )

    def _spawn_create(self) -> None:
        task = asyncio.create_task(self.create_session())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _respawn(self) -> None:
        self._respawn_handle = None
        if self.initialized and self._session_id is None:
            self._spawn_create()

    def _clear_session(self) -> None:
        self._session_id = None
        self._store.clear()

    async def destroy(self) -> None:
        """Destroy the server session and stop listening."""
        self._cancel_timers()
        if self._session_id is not None:
            self._send(TerminalAction.DESTROY)
        self._clear_session()
        self._socket.remove_handler(EnvelopeType.TERMINAL, self.handle_message)
        self.initialized = False
        self.state = SessionState.NO_SESSION
        for task in list(self._tasks):
            task.cancel()
        logger.info("Terminal destroyed")

    # ------------------------------------------------------------------
    # Display -> server
    # ------------------------------------------------------------------

    def on_input(self, data: str) -> bool:
        """Forward keystrokes verbatim. The shell echoes; we never do."""
        if self._session_id is None or not data:
            return False
        return self._send(TerminalAction.INPUT, input=data)

    def request_resize(self) -> None:
        """Schedule a resize; repeated calls during a drag collapse into one."""
        if self._resize_handle is not None:
            self._resize_handle.cancel()
        loop = asyncio.get_running_loop()
        self._resize_handle = loop.call_later(self._resize_debounce, self.finish_resize)

    def finish_resize(self) -> bool:
        """Send the display's current size now."""
        if self._resize_handle is not None:
            self._resize_handle.cancel()
            self._resize_handle = None
        if self._session_id is None:
            return False
        return self._send(
            TerminalAction.RESIZE, cols=self._display.cols, rows=self._display.rows
        )

    def navigate_to_exercise(self, exercise_path: str) -> bool:
        """``cd`` the shell into an exercise directory."""
        if self._session_id is None:
            return False
        command = f'cd "$TOURSHELL_EXERCISES"/{shlex.quote(exercise_path)}\r'
        return self._send(TerminalAction.INPUT, input=command)

    def send_command(self, command: str) -> bool:
        if self._session_id is None:
            return False
        return self._send(TerminalAction.INPUT, input=command + "\r")

    def _send(self, action: TerminalAction, **fields: object) -> bool:
        if self._session_id is None:
            return False
        request = TerminalRequest(action=action, session_id=self._session_id, **fields)
        return self._socket.send(request)

    # ------------------------------------------------------------------
    # Server -> display
    # ------------------------------------------------------------------

    def handle_message(self, envelope: ServerEnvelope) -> None:
        if not isinstance(envelope, TerminalReply):
            return
        if envelope.session_id != self._session_id:
            logger.debug(
                "Ignoring message for different session: %s vs %s",
                envelope.session_id,
                self._session_id,
            )
            return

        action = envelope.action
        if action in (TerminalEvent.CREATED, TerminalEvent.EXISTS):
            logger.debug("Terminal session %s %s", envelope.session_id, action)
            self.state = SessionState.BOUND
            self._store.save(envelope.session_id)
            if action is TerminalEvent.EXISTS:
                # The display may have changed size while we were away.
                self.finish_resize()
        elif action is TerminalEvent.NOT_FOUND:
            logger.debug(
                "Terminal session %s not found on server, creating new one",
                envelope.session_id,
            )
            self._clear_session()
            self.state = SessionState.NO_SESSION
            self._spawn_create()
        elif action is TerminalEvent.OUTPUT:
            if envelope.data:
                self._display.write(envelope.data)
                self._display.scroll_to_bottom()
        elif action is TerminalEvent.EXIT:
            logger.info(
                "Terminal session %s exited (code=%s)",
                envelope.session_id,
                envelope.exit_code,
            )
            self._display.write(EXIT_NOTICE)
            self._clear_session()
            self.state = SessionState.DEAD
            loop = asyncio.get_running_loop()
            self._respawn_handle = loop.call_later(self._respawn_delay, self._respawn)
        elif action is TerminalEvent.ERROR:
            logger.error("Terminal error: %s", envelope.message)
            self._display.write(error_notice(envelope.message or "unknown error"))
            self._clear_session()
            self.state = SessionState.DEAD

    def _on_status(self, connected: bool) -> None:
        if not connected:
            return
        reconnect = self._was_connected
        self._was_connected = True
        if reconnect and self.initialized and self._session_id is not None:
            logger.info("Reconnected; checking terminal session %s", self._session_id)
            self.state = SessionState.AWAITING_SERVER
            self._send(TerminalAction.CHECK)

    def _cancel_timers(self) -> None:
        for handle in (self._resize_handle, self._respawn_handle):
            if handle is not None:
                handle.cancel()
        self._resize_handle = None
        self._respawn_handle = None
