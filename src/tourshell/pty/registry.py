"""Session registry — client-chosen identifiers mapped to live PTY sessions."""

from __future__ import annotations

import asyncio
import codecs
import enum
import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from tourshell.pty.session import PTYSession, SpawnError, default_shell
from tourshell.transport.protocol import TerminalEvent, TerminalReply

if TYPE_CHECKING:
    from tourshell.config import TerminalConfig
    from tourshell.transport.hub import Connection

logger = logging.getLogger(__name__)


class CreateResult(enum.StrEnum):
    CREATED = "created"
    EXISTED = "existed"


class CheckResult(enum.StrEnum):
    EXISTS = "exists"
    NOT_FOUND = "not_found"


@dataclass
class SessionEntry:
    """A live session plus the connection its output is routed to."""

    identifier: str
    session: PTYSession
    connection: Connection | None = None
    _decoder: codecs.IncrementalDecoder = field(
        default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace"),
        repr=False,
    )

    def decode(self, data: bytes, final: bool = False) -> str:
        return self._decoder.decode(data, final)


class SessionRegistry:
    """Owns every terminal session of the server.

    The registry guarantees:
    - At most one live PTY per identifier; ``create``/``check`` for a live
      identifier rebind it to the caller's connection instead of spawning
    - Output and exit envelopes only go to the most recently bound connection
    - Lookup misses (input/resize/destroy on unknown ids) are silent no-ops
    - Late events from a removed session are dropped
    - The session count is capped; the oldest session is reaped first
    """

    def __init__(
        self,
        root: str | Path | None = None,
        command: list[str] | None = None,
        env: dict[str, str] | None = None,
        term: str = "xterm-256color",
        default_cols: int = 80,
        default_rows: int = 24,
        max_sessions: int = 32,
    ) -> None:
        self._root = str(root) if root is not None else os.getcwd()
        self._command = command
        self._env = env or {}
        self._term = term
        self._default_cols = default_cols
        self._default_rows = default_rows
        self._max_sessions = max_sessions
        self._sessions: dict[str, SessionEntry] = {}
        self._spawning: dict[str, asyncio.Future[None]] = {}
        self._destroy_requested: set[str] = set()

    @property
    def root(self) -> str:
        """Exercise root; shells start here unless given another directory."""
        return self._root

    @classmethod
    def from_config(cls, config: TerminalConfig, root: str | Path) -> SessionRegistry:
        return cls(
            root=root,
            command=shlex.split(config.shell) if config.shell else None,
            env=config.env,
            term=config.term,
            default_cols=config.default_cols,
            default_rows=config.default_rows,
            max_sessions=config.max_sessions,
        )

    # ------------------------------------------------------------------
    # Lookup helpers
    # ------------------------------------------------------------------

    def _live_entry(self, identifier: str) -> SessionEntry | None:
        entry = self._sessions.get(identifier)
        if entry is not None and entry.session.alive:
            return entry
        return None

    def _rebind(self, entry: SessionEntry, connection: Connection | None) -> None:
        if entry.connection is not connection:
            logger.info(
                "Rebinding session %s: %s -> %s",
                entry.identifier,
                entry.connection.id if entry.connection else None,
                connection.id if connection else None,
            )
            entry.connection = connection

    def get(self, identifier: str) -> PTYSession | None:
        """Get the live session for an identifier."""
        entry = self._live_entry(identifier)
        return entry.session if entry else None

    def bound_connection(self, identifier: str) -> Connection | None:
        entry = self._sessions.get(identifier)
        return entry.connection if entry else None

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create(
        self,
        identifier: str,
        cols: int | None,
        rows: int | None,
        connection: Connection | None,
        cwd: str | Path | None = None,
    ) -> CreateResult:
        """Create a session, or rebind an existing live one.

        Raises:
            SpawnError: The shell could not be started.
        """
        entry = self._live_entry(identifier)
        if entry is not None:
            self._rebind(entry, connection)
            return CreateResult.EXISTED

        pending = self._spawning.get(identifier)
        if pending is not None:
            # Another request is already spawning this identifier. Once it
            # settles, either rebind to its session or retry the spawn.
            await pending
            return await self.create(identifier, cols, rows, connection, cwd)

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._spawning[identifier] = waiter
        try:
            await self._spawn(identifier, cols, rows, connection, cwd)
        finally:
            self._spawning.pop(identifier, None)
            destroyed = identifier in self._destroy_requested
            self._destroy_requested.discard(identifier)
            waiter.set_result(None)
        if destroyed:
            logger.info("Terminal session %s destroyed while starting", identifier)
            self.destroy(identifier)
        return CreateResult.CREATED

    async def _spawn(
        self,
        identifier: str,
        cols: int | None,
        rows: int | None,
        connection: Connection | None,
        cwd: str | Path | None,
    ) -> None:
        stale = self._sessions.pop(identifier, None)
        if stale is not None:
            stale.session.kill()

        if len(self._sessions) >= self._max_sessions:
            self._reap_oldest()

        env = {**self._env, "TOURSHELL_EXERCISES": self._root}
        session = PTYSession(
            command=list(self._command) if self._command else default_shell(),
            cwd=str(cwd) if cwd is not None else self._root,
            env=env,
            cols=cols or self._default_cols,
            rows=rows or self._default_rows,
            term=self._term,
        )
        entry = SessionEntry(identifier=identifier, session=session, connection=connection)
        session.on_output(lambda data: self._route_output(entry, data))
        session.on_exit(lambda s, code: self._handle_exit(entry, code))

        await session.start()
        self._sessions[identifier] = entry
        logger.info("Terminal session %s created (pty %s)", identifier, session.id)

    async def check(
        self, identifier: str, connection: Connection | None
    ) -> CheckResult:
        """Report whether a live session exists, rebinding it if so.

        A session that is still starting is waited for first.
        """
        pending = self._spawning.get(identifier)
        if pending is not None:
            await pending
        entry = self._live_entry(identifier)
        if entry is not None:
            self._rebind(entry, connection)
            return CheckResult.EXISTS

        stale = self._sessions.pop(identifier, None)
        if stale is not None:
            stale.session.kill()
            logger.debug("Removed stale session entry %s", identifier)
        return CheckResult.NOT_FOUND

    def input(self, identifier: str, data: bytes | str) -> bool:
        entry = self._live_entry(identifier)
        if entry is None:
            logger.debug("Terminal session %s not found for input", identifier)
            return False
        entry.session.write(data)
        return True

    def resize(self, identifier: str, cols: int, rows: int) -> bool:
        entry = self._live_entry(identifier)
        if entry is None:
            logger.debug("Terminal session %s not found for resize", identifier)
            return False
        entry.session.resize(cols, rows)
        return True

    def destroy(self, identifier: str) -> bool:
        """Kill and forget a session. Unknown identifiers are a no-op.

        A session that is still starting is killed once its spawn settles.
        """
        if identifier in self._spawning:
            self._destroy_requested.add(identifier)
            return True
        entry = self._sessions.pop(identifier, None)
        if entry is None:
            return False
        entry.session.kill()
        logger.info("Terminal session %s destroyed", identifier)
        return True

    def detach(self, connection: Connection) -> list[str]:
        """Unbind every session routed to a closing connection.

        The sessions keep running so a reloaded page can reattach.
        """
        detached = []
        for identifier, entry in self._sessions.items():
            if entry.connection is connection:
                entry.connection = None
                detached.append(identifier)
        if detached:
            logger.info(
                "Connection %s closed; detached sessions: %s",
                connection.id,
                ", ".join(detached),
            )
        return detached

    # ------------------------------------------------------------------
    # Session callbacks
    # ------------------------------------------------------------------

    def _is_current(self, entry: SessionEntry) -> bool:
        return self._sessions.get(entry.identifier) is entry

    def _route_output(self, entry: SessionEntry, data: bytes) -> None:
        if not self._is_current(entry):
            return
        text = entry.decode(data)
        if text and entry.connection is not None:
            entry.connection.send(
                TerminalReply(
                    action=TerminalEvent.OUTPUT,
                    session_id=entry.identifier,
                    data=text,
                )
            )

    def _handle_exit(self, entry: SessionEntry, exit_code: int | None) -> None:
        if not self._is_current(entry):
            return
        del self._sessions[entry.identifier]
        self._send_exit(entry, exit_code)

    def _reap_oldest(self) -> None:
        """Make room for one more session.

        Sessions no tab is bound to go first. The bound tab of a reaped
        session is told it exited so it can start over.
        """
        victim = next(
            (e for e in self._sessions.values() if e.connection is None),
            next(iter(self._sessions.values())),
        )
        logger.warning("Max sessions reached, reaping oldest: %s", victim.identifier)
        del self._sessions[victim.identifier]
        victim.session.kill()
        self._send_exit(victim, None)

    def _send_exit(self, entry: SessionEntry, exit_code: int | None) -> None:
        connection = entry.connection
        if connection is None:
            logger.info(
                "Terminal session %s exited with no connection bound", entry.identifier
            )
            return
        tail = entry.decode(b"", final=True)
        if tail:
            connection.send(
                TerminalReply(
                    action=TerminalEvent.OUTPUT,
                    session_id=entry.identifier,
                    data=tail,
                )
            )
        connection.send(
            TerminalReply(
                action=TerminalEvent.EXIT,
                session_id=entry.identifier,
                exit_code=exit_code,
            )
        )

    # ------------------------------------------------------------------
    # Introspection / shutdown
    # ------------------------------------------------------------------

    def list_sessions(self) -> list[dict[str, Any]]:
        """List all tracked sessions."""
        return [
            {
                "id": identifier,
                "pid": entry.session.pid,
                "alive": entry.session.alive,
                "status": entry.session.status.value,
                "cols": entry.session.cols,
                "rows": entry.session.rows,
                "connection": entry.connection.id if entry.connection else None,
            }
            for identifier, entry in self._sessions.items()
        ]

    async def cleanup(self) -> None:
        """Kill all sessions. Called on shutdown."""
        sessions = [entry.session for entry in self._sessions.values()]
        for identifier in list(self._sessions):
            self.destroy(identifier)
        for session in sessions:
            await session.wait_for_exit(timeout=2.0)
        logger.info("All terminal sessions cleaned up")

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, identifier: object) -> bool:
        return isinstance(identifier, str) and self._live_entry(identifier) is not None
