"""Session identifier persistence for the terminal client."""

from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger(__name__)


class SessionStore:
    """One session identifier kept in a small file.

    Storage failures are logged and otherwise ignored: losing the
    identifier only costs a fresh shell on the next start.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    def load(self) -> str | None:
        try:
            value = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.debug("Could not load session id from %s: %s", self.path, e)
            return None
        return value or None

    def save(self, session_id: str) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(session_id, encoding="utf-8")
        except OSError as e:
            logger.debug("Could not save session id to %s: %s", self.path, e)

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.debug("Could not clear session id at %s: %s", self.path, e)


class MemoryStore:
    """In-process store for embedders that do not want a file."""

    def __init__(self, session_id: str | None = None) -> None:
        self._value = session_id

    def load(self) -> str | None:
        return self._value

    def save(self, session_id: str) -> None:
        self._value = session_id

    def clear(self) -> None:
        self._value = None
