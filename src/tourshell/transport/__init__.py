"""Transport — the envelope protocol spoken over the terminal WebSocket.

The connection hub lives in ``tourshell.transport.hub``.
"""

from tourshell.transport.protocol import (
    EnvelopeType,
    MalformedEnvelope,
    Notification,
    TerminalAction,
    TerminalEvent,
    TerminalReply,
    TerminalRequest,
    parse_client_envelope,
    parse_server_envelope,
)

__all__ = [
    "EnvelopeType",
    "MalformedEnvelope",
    "Notification",
    "TerminalAction",
    "TerminalEvent",
    "TerminalReply",
    "TerminalRequest",
    "parse_client_envelope",
    "parse_server_envelope",
]
