"""File watcher — broadcasts ``file_changed`` for edits under the exercise root."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING

import aiofiles
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from tourshell.transport.protocol import EnvelopeType, notification
from tourshell.workspace import exercise_name

if TYPE_CHECKING:
    from tourshell.transport.hub import ConnectionHub

logger = logging.getLogger(__name__)

_IGNORED_PARTS = {".git", "target", "__pycache__", "node_modules"}
_IGNORED_SUFFIXES = (".swp", ".swx", ".tmp", "~")


async def read_exercise_title(exercise_dir: Path) -> str | None:
    """Read ``title`` from an exercise's metadata.json, if it has one."""
    path = exercise_dir / "metadata.json"
    if not path.is_file():
        return None
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            data = json.loads(await f.read())
    except (OSError, json.JSONDecodeError) as e:
        logger.debug("Could not read %s: %s", path, e)
        return None
    title = data.get("title") if isinstance(data, dict) else None
    return title if isinstance(title, str) and title else None


class _Handler(FileSystemEventHandler):
    def __init__(self, watcher: ExerciseWatcher) -> None:
        super().__init__()
        self._watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type in ("opened", "closed_no_write"):
            return
        path = event.dest_path or event.src_path
        if isinstance(path, bytes):
            path = path.decode("utf-8", errors="replace")
        self._watcher.post(path)


class ExerciseWatcher:
    """Watches the exercise tree on a watchdog thread.

    Events are handed to the event loop, which resolves the exercise title
    and broadcasts one ``file_changed`` envelope per change.
    """

    def __init__(self, root: str | Path, hub: ConnectionHub) -> None:
        self._root = Path(root).resolve()
        self._hub = hub
        self._observer: Observer | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tasks: set[asyncio.Task[bool]] = set()

    def start(self) -> None:
        """Start watching. Must be called from the event loop."""
        if not self._root.is_dir():
            logger.warning("Exercise root %s does not exist; not watching", self._root)
            return
        self._loop = asyncio.get_running_loop()
        self._observer = Observer()
        self._observer.schedule(_Handler(self), str(self._root), recursive=True)
        self._observer.start()
        logger.info("Watching %s for file changes", self._root)

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=2)
        self._observer = None
        for task in self._tasks:
            task.cancel()

    def post(self, path: str) -> None:
        """Thread-safe entry point for watchdog callbacks."""
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._schedule, path)

    def _schedule(self, path: str) -> None:
        task = asyncio.create_task(self.notify(Path(path)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def notify(self, path: Path) -> bool:
        """Broadcast a change to ``path``. Returns False if it was ignored."""
        try:
            relative = path.resolve().relative_to(self._root)
        except ValueError:
            return False
        if _IGNORED_PARTS.intersection(relative.parts) or relative.name.endswith(
            _IGNORED_SUFFIXES
        ):
            return False

        fallback = exercise_name(relative)
        if fallback is None:
            return False
        exercise_dir = self._root / relative.parts[0] / relative.parts[1]
        title = await read_exercise_title(exercise_dir) or fallback

        self._hub.broadcast(
            notification(
                EnvelopeType.FILE_CHANGED,
                exercise=title,
                file=relative.as_posix(),
            )
        )
        return True
