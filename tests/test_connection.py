"""Tests for tourshell.client.connection.ReconnectingSocket against a real server."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest
from websockets.asyncio.client import connect
from websockets.asyncio.server import ServerConnection, serve

from tourshell.client.connection import ReconnectingSocket
from tourshell.transport.protocol import TerminalEvent, TerminalReply


class EchoServer:
    """Replies to terminal ``check`` frames; can drop connections on demand."""

    def __init__(self) -> None:
        self.received: list[dict[str, Any]] = []
        self.connections = 0
        self.close_code: int | None = None
        self.url = ""

    async def handler(self, ws: ServerConnection) -> None:
        self.connections += 1
        if self.close_code is not None:
            code, self.close_code = self.close_code, None
            await ws.close(code)
            return
        async for raw in ws:
            data = json.loads(raw)
            self.received.append(data)
            if data.get("action") == "check":
                await ws.send(
                    json.dumps(
                        {"type": "terminal", "action": "not_found", "sessionId": data["sessionId"]}
                    )
                )


@pytest.fixture
async def server():
    echo = EchoServer()
    async with serve(echo.handler, "127.0.0.1", 0) as srv:
        port = srv.sockets[0].getsockname()[1]
        echo.url = f"ws://127.0.0.1:{port}"
        yield echo


def _socket(url: str, **kwargs: Any) -> ReconnectingSocket:
    kwargs.setdefault("max_reconnect_attempts", 3)
    kwargs.setdefault("reconnect_base_delay", 0.01)
    return ReconnectingSocket(url, **kwargs)


class TestReconnectingSocket:
    async def test_send_when_closed_dropped(self) -> None:
        sock = _socket("ws://127.0.0.1:1")
        assert not sock.open
        assert sock.send({"type": "heartbeat"}) is False

    async def test_default_connector_opens(self, server: EchoServer) -> None:
        sock = ReconnectingSocket(server.url, max_reconnect_attempts=0)
        task = sock.start()
        assert await sock.wait_open(attempts=100, interval=0.02)
        assert not task.done()
        assert server.connections == 1
        await sock.close()
        assert task.exception() is None

    async def test_roundtrip_and_dispatch(self, server: EchoServer) -> None:
        sock = _socket(server.url)
        replies: list[TerminalReply] = []
        sock.add_handler("terminal", replies.append)
        sock.start()
        assert await sock.wait_open(attempts=50, interval=0.02)

        assert sock.send({"type": "terminal", "action": "check", "sessionId": "t1"})
        async with asyncio.timeout(5):
            while not replies:
                await asyncio.sleep(0.01)
        assert replies[0].action is TerminalEvent.NOT_FOUND
        assert replies[0].session_id == "t1"
        await sock.close()

    async def test_removed_handler_not_called(self, server: EchoServer) -> None:
        sock = _socket(server.url)
        calls: list[Any] = []
        sock.add_handler("terminal", calls.append)
        sock.remove_handler("terminal", calls.append)
        sock.start()
        await sock.wait_open(attempts=50, interval=0.02)
        sock.send({"type": "terminal", "action": "check", "sessionId": "t1"})
        await asyncio.sleep(0.1)
        assert calls == []
        await sock.close()

    async def test_reconnects_after_abnormal_close(self, server: EchoServer) -> None:
        server.close_code = 1011
        statuses: list[bool] = []
        sock = _socket(server.url)
        sock.on_status(statuses.append)
        sock.start()
        async with asyncio.timeout(5):
            while statuses != [True, False, True]:
                await asyncio.sleep(0.01)
        assert server.connections == 2
        assert sock.open
        await sock.close()

    async def test_normal_close_from_server_ends(self, server: EchoServer) -> None:
        server.close_code = 1000
        sock = _socket(server.url)
        task = sock.start()
        await asyncio.wait_for(task, 5)
        assert server.connections == 1
        assert not sock.open

    async def test_gives_up_after_max_attempts(self) -> None:
        attempts = 0

        async def refuse(url: str) -> Any:
            nonlocal attempts
            attempts += 1
            raise ConnectionRefusedError("nobody home")

        sock = _socket("ws://127.0.0.1:1", max_reconnect_attempts=2, connector=refuse)
        await asyncio.wait_for(sock.run(), 5)
        assert attempts == 3
        assert not sock.open

    async def test_recovers_after_refusals(self, server: EchoServer) -> None:
        attempts = 0

        async def flaky(url: str) -> Any:
            nonlocal attempts
            attempts += 1
            if attempts < 3:
                raise ConnectionRefusedError("not yet")
            return await connect(url)

        sock = _socket(server.url, connector=flaky)
        sock.start()
        assert await sock.wait_open(attempts=100, interval=0.02)
        assert attempts == 3
        await sock.close()

    async def test_close_flushes_and_stops(self, server: EchoServer) -> None:
        sock = _socket(server.url)
        task = sock.start()
        await sock.wait_open(attempts=50, interval=0.02)
        sock.send({"type": "terminal", "action": "destroy", "sessionId": "t1"})
        await sock.close()
        assert task.done()
        await asyncio.sleep(0.05)
        assert server.received == [{"type": "terminal", "action": "destroy", "sessionId": "t1"}]
        assert server.connections == 1

    async def test_heartbeat_sent(self, server: EchoServer) -> None:
        sock = _socket(server.url, heartbeat_interval=0.05)
        sock.start()
        await sock.wait_open(attempts=50, interval=0.02)
        async with asyncio.timeout(5):
            while not any(f["type"] == "heartbeat" for f in server.received):
                await asyncio.sleep(0.01)
        assert isinstance(server.received[0]["timestamp"], int)
        await sock.close()
