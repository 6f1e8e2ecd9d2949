"""PTY process management — shell sessions on pseudo-terminals.

Each browser terminal is backed by one PTYSession (a shell in its own
process group). The SessionRegistry maps client-chosen identifiers to
sessions and routes their output to the connection that owns them.
"""

from tourshell.pty.session import PTYSession, PTYStatus, SpawnError
from tourshell.pty.registry import CheckResult, CreateResult, SessionRegistry

__all__ = [
    "PTYSession",
    "PTYStatus",
    "SpawnError",
    "SessionRegistry",
    "CreateResult",
    "CheckResult",
]
