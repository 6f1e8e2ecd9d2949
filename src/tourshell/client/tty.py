"""Local TTY as a terminal display — the ``tourshell attach`` front end.

POSIX only: stdin is put in raw mode and read through the event loop;
Ctrl-] detaches, leaving the server session running.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import shutil
import signal
import sys
from typing import TYPE_CHECKING, TextIO

from tourshell.client.connection import ReconnectingSocket
from tourshell.client.controller import TerminalController
from tourshell.client.storage import SessionStore

if sys.platform != "win32":
    import termios
    import tty

if TYPE_CHECKING:
    from tourshell.config import ClientConfig

logger = logging.getLogger(__name__)

DETACH_KEY = b"\x1d"  # Ctrl-]


class TtyDisplay:
    """Writes terminal output straight to a text stream."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream or sys.stdout

    @property
    def cols(self) -> int:
        return shutil.get_terminal_size().columns

    @property
    def rows(self) -> int:
        return shutil.get_terminal_size().lines

    def write(self, text: str) -> None:
        self._stream.write(text)
        self._stream.flush()

    def scroll_to_bottom(self) -> None:
        # A real terminal follows its own cursor.
        pass


class _RawMode:
    """Context manager putting a tty fd in raw mode."""

    def __init__(self, fd: int) -> None:
        self._fd = fd
        self._saved: list | None = None

    def __enter__(self) -> _RawMode:
        if os.isatty(self._fd):
            self._saved = termios.tcgetattr(self._fd)
            tty.setraw(self._fd)
        return self

    def __exit__(self, *exc: object) -> None:
        if self._saved is not None:
            termios.tcsetattr(self._fd, termios.TCSADRAIN, self._saved)


async def attach(config: ClientConfig, destroy_on_exit: bool = False) -> int:
    """Attach the local terminal to a server session until detach or EOF.

    Returns a process exit code.
    """
    if sys.platform == "win32":
        logger.error("tourshell attach needs a POSIX terminal")
        return 1

    loop = asyncio.get_running_loop()
    socket = ReconnectingSocket(
        config.url,
        max_reconnect_attempts=config.max_reconnect_attempts,
        reconnect_base_delay=config.reconnect_base_delay,
        heartbeat_interval=config.heartbeat_interval,
    )
    controller = TerminalController(
        socket,
        TtyDisplay(),
        SessionStore(config.session_file),
        respawn_delay=config.respawn_delay,
        resize_debounce=config.resize_debounce,
        connect_poll_attempts=config.connect_poll_attempts,
        connect_poll_interval=config.connect_poll_interval,
    )

    stdin_fd = sys.stdin.fileno()
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    detached = asyncio.Event()

    def on_stdin() -> None:
        data = os.read(stdin_fd, 4096)
        if not data or DETACH_KEY in data:
            data = data.split(DETACH_KEY, 1)[0]
            if data:
                controller.on_input(decoder.decode(data))
            detached.set()
            return
        text = decoder.decode(data)
        if text:
            controller.on_input(text)

    runner = socket.start()
    if not await controller.init():
        await socket.close()
        return 1

    with _RawMode(stdin_fd):
        loop.add_reader(stdin_fd, on_stdin)
        loop.add_signal_handler(signal.SIGWINCH, controller.request_resize)
        waiter = asyncio.create_task(detached.wait())
        try:
            done, _ = await asyncio.wait(
                [runner, waiter], return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            waiter.cancel()
            loop.remove_reader(stdin_fd)
            loop.remove_signal_handler(signal.SIGWINCH)

    lost = runner in done
    if destroy_on_exit and not lost:
        await controller.destroy()
    await socket.close()
    sys.stdout.write("\r\n[detached]\r\n" if not lost else "\r\n[connection lost]\r\n")
    sys.stdout.flush()
    return 1 if lost else 0
