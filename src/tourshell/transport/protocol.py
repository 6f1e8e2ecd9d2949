"""Wire protocol — JSON envelopes carried over the terminal WebSocket.

Every frame is one JSON object tagged by ``type``. The ``terminal``
sub-protocol carries an ``action``; other types (heartbeats, file-change
notifications, progress events) are opaque notifications as far as the
terminal core is concerned.

    client -> server   {"type": "terminal", "action": "create", "sessionId": "t1", "cols": 80, "rows": 24}
    server -> client   {"type": "terminal", "action": "output", "sessionId": "t1", "data": "..."}
"""

from __future__ import annotations

import enum
import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class EnvelopeType(enum.StrEnum):
    TERMINAL = "terminal"
    HEARTBEAT = "heartbeat"
    HEARTBEAT_RESPONSE = "heartbeat_response"
    FILE_CHANGED = "file_changed"
    FILE_UPDATED = "file_updated"
    EXERCISE_VIEW = "exercise_view"
    CODE_EXECUTION = "code_execution"
    PROGRESS_UPDATE = "progress_update"


class TerminalAction(enum.StrEnum):
    """Client -> server terminal actions."""

    CREATE = "create"
    CHECK = "check"
    INPUT = "input"
    RESIZE = "resize"
    DESTROY = "destroy"


class TerminalEvent(enum.StrEnum):
    """Server -> client terminal actions."""

    CREATED = "created"
    EXISTS = "exists"
    NOT_FOUND = "not_found"
    OUTPUT = "output"
    EXIT = "exit"
    ERROR = "error"


class MalformedEnvelope(ValueError):
    """A frame that is not a well-formed envelope."""


class Envelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class TerminalRequest(Envelope):
    type: Literal["terminal"] = "terminal"
    action: TerminalAction
    session_id: str | None = Field(default=None, alias="sessionId")
    cols: int | None = Field(default=None, ge=1, le=1000)
    rows: int | None = Field(default=None, ge=1, le=1000)
    input: str | None = None
    exercise: str | None = Field(
        default=None, description="Exercise-relative directory for a new shell"
    )


class TerminalReply(Envelope):
    type: Literal["terminal"] = "terminal"
    action: TerminalEvent
    session_id: str = Field(alias="sessionId")
    data: str | None = None
    message: str | None = None
    exit_code: int | None = Field(default=None, alias="exitCode")


class Heartbeat(Envelope):
    type: Literal["heartbeat"] = "heartbeat"
    timestamp: int | None = None


class Notification(Envelope):
    """Any other envelope. Fields beyond ``type`` are kept verbatim."""

    model_config = ConfigDict(extra="allow")

    type: str

    @property
    def extras(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


ClientEnvelope = TerminalRequest | Heartbeat | Notification
ServerEnvelope = TerminalReply | Notification

_CLIENT_MODELS: dict[str, type[Envelope]] = {
    EnvelopeType.TERMINAL: TerminalRequest,
    EnvelopeType.HEARTBEAT: Heartbeat,
}
_SERVER_MODELS: dict[str, type[Envelope]] = {
    EnvelopeType.TERMINAL: TerminalReply,
}


def _load(raw: str | bytes) -> dict[str, Any]:
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedEnvelope(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedEnvelope("envelope must be a JSON object")
    if not isinstance(data.get("type"), str):
        raise MalformedEnvelope("envelope has no 'type' tag")
    return data


def _validate(data: dict[str, Any], models: dict[str, type[Envelope]]) -> Any:
    model = models.get(data["type"], Notification)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise MalformedEnvelope(
            f"invalid {data['type']!r} envelope ({e.error_count()} errors)"
        ) from e


def parse_client_envelope(raw: str | bytes) -> ClientEnvelope:
    """Parse a client frame. Raises MalformedEnvelope."""
    return _validate(_load(raw), _CLIENT_MODELS)


def parse_server_envelope(raw: str | bytes) -> ServerEnvelope:
    """Parse a server frame. Raises MalformedEnvelope."""
    return _validate(_load(raw), _SERVER_MODELS)


def encode(envelope: Envelope | dict[str, Any]) -> str:
    """Serialize an envelope (model or plain dict) to one JSON frame."""
    if isinstance(envelope, Envelope):
        return envelope.to_json()
    return json.dumps(envelope)


def notification(type: str, **fields: Any) -> Notification:
    """Build a broadcast notification, e.g. ``notification("file_changed", file=...)``."""
    return Notification(type=type, **fields)
