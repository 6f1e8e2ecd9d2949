"""PTY session — one interactive shell attached to a pseudo-terminal."""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import signal
import sys
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

if sys.platform == "win32":
    from winpty import PtyProcess
else:
    import fcntl
    import pty
    import struct
    import termios

logger = logging.getLogger(__name__)

_READ_SIZE = 65536

OutputCallback = Callable[[bytes], None]
ExitCallback = Callable[["PTYSession", "int | None"], None]


class PTYStatus(enum.Enum):
    """Lifecycle states for a PTY session."""

    SPAWNING = "spawning"
    RUNNING = "running"
    EXITED = "exited"


class SpawnError(Exception):
    """The OS refused to allocate a pseudo-terminal or start the shell."""


def default_shell() -> list[str]:
    """Platform shell: ``$SHELL`` (or bash) on POSIX, PowerShell on Windows."""
    if sys.platform == "win32":
        return ["powershell.exe"]
    return [os.environ.get("SHELL") or "/bin/bash"]


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


@dataclass
class PTYSession:
    """A shell process running on its own pseudo-terminal.

    Output is a raw, in-order byte stream delivered to ``on_output``
    callbacks; ``on_exit`` callbacks fire exactly once when the process
    ends, whatever the cause (clean exit, signal, ``kill()``).

    On POSIX the master fd is read with ``loop.add_reader`` so every chunk
    is handled on the event loop in emission order, and the child runs in
    its own session (``start_new_session``) so ``kill()`` can take down the
    whole process group. On Windows the session is backed by pywinpty and
    read from an executor thread.
    """

    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    command: list[str] = field(default_factory=default_shell)
    cwd: str = field(default_factory=os.getcwd)
    env: dict[str, str] = field(default_factory=dict)
    cols: int = 80
    rows: int = 24
    term: str = "xterm-256color"

    # Internal state
    _status: PTYStatus = field(default=PTYStatus.SPAWNING, init=False)
    _exit_code: int | None = field(default=None, init=False)
    _master_fd: int = field(default=-1, init=False)
    _proc: asyncio.subprocess.Process | None = field(default=None, init=False)
    _winpty: Any = field(default=None, init=False)
    _pgid: int = field(default=0, init=False)
    _reading: bool = field(default=False, init=False)
    _pending: bytearray = field(default_factory=bytearray, init=False)
    _killed: bool = field(default=False, init=False)
    _watcher: asyncio.Task | None = field(default=None, init=False)
    _output_callbacks: list[OutputCallback] = field(default_factory=list, init=False)
    _exit_callbacks: list[ExitCallback] = field(default_factory=list, init=False)

    def on_output(self, callback: OutputCallback) -> None:
        """Register a callback for each chunk of raw output."""
        self._output_callbacks.append(callback)

    def on_exit(self, callback: ExitCallback) -> None:
        """Register a callback receiving ``(session, exit_code)`` on exit."""
        self._exit_callbacks.append(callback)

    async def start(self) -> None:
        """Spawn the shell. Raises SpawnError if the OS refuses."""
        if self._status is not PTYStatus.SPAWNING:
            raise RuntimeError(f"PTY session {self.id} was already started")

        env = {**os.environ, **self.env}
        env["TERM"] = self.term

        try:
            if sys.platform == "win32":
                self._spawn_windows(env)
            else:
                await self._spawn_posix(env)
        except Exception as e:
            self._status = PTYStatus.EXITED
            raise SpawnError(
                f"Could not start {' '.join(self.command)} in {self.cwd}: {e}"
            ) from e

        self._status = PTYStatus.RUNNING
        self._watcher = asyncio.create_task(self._watch_exit(), name=f"pty-{self.id}")

        logger.info(
            "PTY session %s started: pid=%s size=%dx%d cwd=%s cmd=%s",
            self.id,
            self.pid,
            self.cols,
            self.rows,
            self.cwd,
            " ".join(self.command),
        )

    async def _spawn_posix(self, env: dict[str, str]) -> None:
        master_fd, slave_fd = pty.openpty()
        try:
            _set_winsize(slave_fd, self.cols, self.rows)
            self._proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=self.cwd,
                env=env,
                start_new_session=True,
            )
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            # Parent never keeps the slave end open, so EOF on the master
            # means every process holding the terminal is gone.
            os.close(slave_fd)

        self._master_fd = master_fd
        try:
            self._pgid = os.getpgid(self._proc.pid)
        except ProcessLookupError:
            self._pgid = self._proc.pid
        os.set_blocking(master_fd, False)
        asyncio.get_running_loop().add_reader(master_fd, self._read_ready)
        self._reading = True

    def _spawn_windows(self, env: dict[str, str]) -> None:
        self._winpty = PtyProcess.spawn(
            self.command,
            cwd=self.cwd,
            env=env,
            dimensions=(self.rows, self.cols),
        )

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _emit(self, data: bytes) -> None:
        for callback in list(self._output_callbacks):
            try:
                callback(data)
            except Exception:
                logger.exception("Error in output callback for session %s", self.id)

    def _read_ready(self) -> None:
        try:
            data = os.read(self._master_fd, _READ_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # Linux reports EIO once the last slave handle is closed.
            data = b""
        if not data:
            self._stop_reading()
            return
        self._emit(data)

    def _drain(self) -> None:
        """Deliver whatever the process wrote before it exited."""
        if self._master_fd < 0:
            return
        while True:
            try:
                data = os.read(self._master_fd, _READ_SIZE)
            except OSError:
                return
            if not data:
                return
            self._emit(data)

    def _stop_reading(self) -> None:
        if self._reading:
            asyncio.get_running_loop().remove_reader(self._master_fd)
            self._reading = False

    def _close_master(self) -> None:
        if self._master_fd < 0:
            return
        self._stop_reading()
        loop = asyncio.get_running_loop()
        if self._pending:
            loop.remove_writer(self._master_fd)
            self._pending.clear()
        try:
            os.close(self._master_fd)
        except OSError:
            pass
        self._master_fd = -1

    async def _watch_exit(self) -> None:
        if self._winpty is not None:
            code = await self._read_windows()
        elif self._proc is not None:
            code = await self._proc.wait()
            self._drain()
            self._close_master()
        else:
            code = None
        self._finish(code)

    async def _read_windows(self) -> int | None:
        loop = asyncio.get_running_loop()
        while True:
            try:
                text = await loop.run_in_executor(None, self._winpty.read, _READ_SIZE)
            except EOFError:
                break
            if text:
                self._emit(text.encode("utf-8"))
        return self._winpty.exitstatus

    def _finish(self, exit_code: int | None) -> None:
        if self._status is PTYStatus.EXITED:
            return
        self._status = PTYStatus.EXITED
        self._exit_code = exit_code
        logger.info("PTY session %s exited (code=%s)", self.id, exit_code)
        for callback in list(self._exit_callbacks):
            try:
                callback(self, exit_code)
            except Exception:
                logger.exception("Error in on_exit callback for session %s", self.id)

    # ------------------------------------------------------------------
    # Input / control
    # ------------------------------------------------------------------

    def write(self, data: bytes | str) -> None:
        """Forward raw bytes to the process. Dropped unless running."""
        if self._status is not PTYStatus.RUNNING or not data:
            return
        if isinstance(data, str):
            data = data.encode("utf-8")

        if self._winpty is not None:
            self._winpty.write(data.decode("utf-8", errors="replace"))
            return

        # Keep byte order when an earlier write is still queued.
        if self._pending:
            self._pending.extend(data)
            return
        try:
            written = os.write(self._master_fd, data)
        except BlockingIOError:
            written = 0
        except OSError as e:
            logger.debug("PTY write to %s failed: %s", self.id, e)
            return
        if written < len(data):
            self._pending.extend(data[written:])
            asyncio.get_running_loop().add_writer(self._master_fd, self._write_ready)

    def _write_ready(self) -> None:
        try:
            written = os.write(self._master_fd, self._pending)
        except BlockingIOError:
            return
        except OSError as e:
            logger.debug("PTY write to %s failed: %s", self.id, e)
            written = len(self._pending)
        del self._pending[:written]
        if not self._pending:
            asyncio.get_running_loop().remove_writer(self._master_fd)

    def resize(self, cols: int, rows: int) -> None:
        """Set the terminal size. Same size or a dead session is a no-op."""
        if self._status is not PTYStatus.RUNNING:
            return
        if (cols, rows) == (self.cols, self.rows):
            return
        self.cols, self.rows = cols, rows

        if self._winpty is not None:
            self._winpty.setwinsize(rows, cols)
            return

        try:
            _set_winsize(self._master_fd, cols, rows)
            # The slave is not a controlling terminal of the shell, so the
            # kernel won't deliver SIGWINCH on its own.
            os.killpg(self._pgid, signal.SIGWINCH)
        except OSError as e:
            logger.debug("PTY resize of %s failed: %s", self.id, e)

    def kill(self) -> None:
        """Kill the whole process group. Safe to call repeatedly."""
        if self._status is not PTYStatus.RUNNING or self._killed:
            return
        self._killed = True

        if self._winpty is not None:
            try:
                self._winpty.terminate(force=True)
            except Exception as e:
                logger.warning("Error killing PTY session %s: %s", self.id, e)
            return

        try:
            os.killpg(self._pgid, signal.SIGKILL)
            logger.info("Killed PTY session %s (pgid=%d)", self.id, self._pgid)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self._pgid)
        except OSError as e:
            logger.warning("Error killing PTY session %s: %s", self.id, e)
            if self._proc is not None and self._proc.returncode is None:
                self._proc.kill()

    async def wait_for_exit(self, timeout: float = 10.0) -> int | None:
        """Wait for the process to exit. Returns exit code or None on timeout."""
        if self._watcher is None:
            return self._exit_code
        try:
            await asyncio.wait_for(asyncio.shield(self._watcher), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        return self._exit_code

    @property
    def alive(self) -> bool:
        return self._status is PTYStatus.RUNNING

    @property
    def status(self) -> PTYStatus:
        return self._status

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    @property
    def pid(self) -> int | None:
        if self._proc is not None:
            return self._proc.pid
        if self._winpty is not None:
            return self._winpty.pid
        return None
