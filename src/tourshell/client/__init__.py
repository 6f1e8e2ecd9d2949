"""Client — terminal controller and its reconnecting transport."""

from tourshell.client.connection import ReconnectingSocket
from tourshell.client.controller import (
    Display,
    SessionState,
    TerminalController,
    new_session_id,
)
from tourshell.client.storage import MemoryStore, SessionStore

__all__ = [
    "Display",
    "MemoryStore",
    "ReconnectingSocket",
    "SessionState",
    "SessionStore",
    "TerminalController",
    "new_session_id",
]
