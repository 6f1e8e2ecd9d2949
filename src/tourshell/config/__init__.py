"""Configuration — Pydantic models for tourshell settings."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class ServerConfig(BaseModel):
    """HTTP / WebSocket server configuration."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=3000)
    ws_path: str = Field(
        default="/ws", description="Path that accepts the WebSocket upgrade"
    )
    debug_websocket: bool = Field(
        default=False, description="Log every inbound envelope at debug level"
    )
    send_queue_size: int = Field(
        default=1024, ge=1, description="Frames buffered per connection before output is dropped"
    )


class TerminalConfig(BaseModel):
    """Shell session configuration.

    ``shell`` is a full command line (e.g. ``"/bin/zsh -l"``). When unset
    the platform default is used: ``$SHELL`` or ``/bin/bash`` on POSIX,
    ``powershell.exe`` on Windows.
    """

    shell: str | None = Field(default=None)
    term: str = Field(default="xterm-256color", description="TERM for the child")
    default_cols: int = Field(default=80, ge=1)
    default_rows: int = Field(default=24, ge=1)
    max_sessions: int = Field(
        default=32, ge=1, description="Oldest session is reaped past this count"
    )
    env: dict[str, str] = Field(default_factory=dict)


class ClientConfig(BaseModel):
    """Settings for the terminal client (``tourshell attach``)."""

    url: str = Field(default="ws://127.0.0.1:3000/ws")
    session_file: str = Field(
        default="~/.tourshell/terminal-session",
        description="Where the terminal session identifier is persisted",
    )
    max_reconnect_attempts: int = Field(default=5, ge=0)
    reconnect_base_delay: float = Field(
        default=1.0, description="First backoff delay in seconds; doubles per attempt"
    )
    connect_poll_attempts: int = Field(default=50, ge=1)
    connect_poll_interval: float = Field(default=0.1)
    respawn_delay: float = Field(
        default=1.0, description="Delay before replacing an exited session"
    )
    resize_debounce: float = Field(default=0.016)
    heartbeat_interval: float = Field(default=30.0)


class TourshellConfig(BaseModel):
    """Top-level tourshell configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    terminal: TerminalConfig = Field(default_factory=TerminalConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)
    exercises_path: str = Field(
        default="exercises", description="Root directory shells start in"
    )
    watch_files: bool = Field(
        default=True, description="Broadcast file_changed for edits under exercises_path"
    )

    @property
    def exercises_dir(self) -> Path:
        return Path(self.exercises_path).expanduser().resolve()

    @classmethod
    def load(cls, config_path: str | None = None) -> TourshellConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            TOURSHELL_HOST             - Bind address for ``serve``
            TOURSHELL_PORT             - Port for ``serve``
            TOURSHELL_WS_PATH          - WebSocket path
            TOURSHELL_DEBUG_WEBSOCKET  - "1"/"true" to log every envelope
            TOURSHELL_EXERCISES_PATH   - Exercise root directory
            TOURSHELL_SHELL            - Shell command line
            TOURSHELL_URL              - WebSocket URL used by ``attach``
            TOURSHELL_SESSION_FILE     - Session identifier file used by ``attach``
        """
        load_dotenv(override=False)

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        server = config_data.get("server", {})
        terminal = config_data.get("terminal", {})
        client = config_data.get("client", {})

        env_host = os.environ.get("TOURSHELL_HOST")
        if env_host:
            server["host"] = env_host

        env_port = os.environ.get("TOURSHELL_PORT")
        if env_port:
            server["port"] = int(env_port)

        env_ws_path = os.environ.get("TOURSHELL_WS_PATH")
        if env_ws_path:
            server["ws_path"] = env_ws_path

        env_debug = os.environ.get("TOURSHELL_DEBUG_WEBSOCKET")
        if env_debug:
            server["debug_websocket"] = env_debug.lower() in ("1", "true", "yes")

        env_exercises = os.environ.get("TOURSHELL_EXERCISES_PATH")
        if env_exercises:
            config_data["exercises_path"] = env_exercises

        env_shell = os.environ.get("TOURSHELL_SHELL")
        if env_shell:
            terminal["shell"] = env_shell

        env_url = os.environ.get("TOURSHELL_URL")
        if env_url:
            client["url"] = env_url

        env_session_file = os.environ.get("TOURSHELL_SESSION_FILE")
        if env_session_file:
            client["session_file"] = env_session_file

        if server:
            config_data["server"] = server
        if terminal:
            config_data["terminal"] = terminal
        if client:
            config_data["client"] = client

        return cls.model_validate(config_data)
