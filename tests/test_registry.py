"""Tests for tourshell.pty.registry.SessionRegistry (POSIX, real /bin/sh)."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import pytest

from tourshell.pty.registry import CheckResult, CreateResult, SessionRegistry
from tourshell.pty.session import SpawnError
from tourshell.transport.hub import Connection

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX pty")


def _frames(connection: Connection) -> list[dict[str, Any]]:
    return [json.loads(frame) for frame in connection.pending()]


class _Collector:
    """Accumulates frames drained from a connection."""

    def __init__(self, connection: Connection) -> None:
        self.connection = connection
        self.frames: list[dict[str, Any]] = []

    def drain(self) -> list[dict[str, Any]]:
        self.frames.extend(_frames(self.connection))
        return self.frames

    def output(self) -> str:
        return "".join(
            f.get("data", "") for f in self.drain() if f["action"] == "output"
        )

    def actions(self) -> list[str]:
        return [f["action"] for f in self.drain()]

    async def wait_for_output(self, needle: str, timeout: float = 5.0) -> None:
        async with asyncio.timeout(timeout):
            while needle not in self.output():
                await asyncio.sleep(0.01)

    async def wait_for_action(self, action: str, timeout: float = 5.0) -> None:
        async with asyncio.timeout(timeout):
            while action not in self.actions():
                await asyncio.sleep(0.01)


@pytest.fixture
async def registry(tmp_path: Path):
    reg = SessionRegistry(root=tmp_path, command=["/bin/sh"])
    yield reg
    await reg.cleanup()


class TestCreate:
    async def test_create_spawns(self, registry: SessionRegistry) -> None:
        conn = Connection()
        result = await registry.create("t1", 80, 24, conn)
        assert result is CreateResult.CREATED
        assert "t1" in registry
        assert len(registry) == 1
        session = registry.get("t1")
        assert session is not None and session.alive

    async def test_create_twice_keeps_one_process(self, registry: SessionRegistry) -> None:
        conn = Connection()
        await registry.create("t1", 80, 24, conn)
        pid = registry.get("t1").pid
        result = await registry.create("t1", 80, 24, conn)
        assert result is CreateResult.EXISTED
        assert registry.get("t1").pid == pid
        assert len(registry) == 1

    async def test_concurrent_creates_share_one_spawn(
        self, registry: SessionRegistry
    ) -> None:
        a, b = Connection(), Connection()
        results = await asyncio.gather(
            registry.create("t1", 80, 24, a),
            registry.create("t1", 80, 24, b),
        )
        assert sorted(results) == [CreateResult.CREATED, CreateResult.EXISTED]
        assert len(registry) == 1
        assert registry.bound_connection("t1") is b

    async def test_default_size(self, registry: SessionRegistry) -> None:
        await registry.create("t1", None, None, Connection())
        session = registry.get("t1")
        assert (session.cols, session.rows) == (80, 24)

    async def test_shell_sees_exercise_root(
        self, registry: SessionRegistry, tmp_path: Path
    ) -> None:
        conn = Connection()
        out = _Collector(conn)
        await registry.create("t1", 80, 24, conn)
        registry.input("t1", 'echo "root=$TOURSHELL_EXERCISES"\r')
        await out.wait_for_output(f"root={tmp_path}")

    async def test_cwd_override(self, registry: SessionRegistry, tmp_path: Path) -> None:
        sub = tmp_path / "ch01" / "ex01"
        sub.mkdir(parents=True)
        conn = Connection()
        out = _Collector(conn)
        await registry.create("t1", 80, 24, conn, cwd=sub)
        registry.input("t1", "pwd\r")
        await out.wait_for_output(str(sub.resolve()))

    async def test_spawn_error_leaves_no_entry(self, tmp_path: Path) -> None:
        reg = SessionRegistry(root=tmp_path, command=["/nonexistent/shell"])
        with pytest.raises(SpawnError):
            await reg.create("t1", 80, 24, Connection())
        assert len(reg) == 0
        assert "t1" not in reg

    async def test_cap_reaps_oldest(self, tmp_path: Path) -> None:
        reg = SessionRegistry(root=tmp_path, command=["/bin/sh"], max_sessions=2)
        try:
            for name in ("a", "b", "c"):
                await reg.create(name, 80, 24, Connection())
            assert len(reg) == 2
            assert "a" not in reg
            assert "b" in reg and "c" in reg
        finally:
            await reg.cleanup()

    async def test_cap_tells_reaped_tab(self, tmp_path: Path) -> None:
        reg = SessionRegistry(root=tmp_path, command=["/bin/sh"], max_sessions=1)
        first, second = Connection(), Connection()
        try:
            await reg.create("ta", 80, 24, first)
            await reg.create("tb", 80, 24, second)
            await asyncio.sleep(0.3)
            exits = [f for f in _frames(first) if f["action"] == "exit"]
            assert exits == [
                {"type": "terminal", "action": "exit", "sessionId": "ta"}
            ]
            assert "ta" not in reg
            assert "tb" in reg
        finally:
            await reg.cleanup()

    async def test_cap_prefers_unbound(self, tmp_path: Path) -> None:
        reg = SessionRegistry(root=tmp_path, command=["/bin/sh"], max_sessions=2)
        bound, gone = Connection(), Connection()
        try:
            await reg.create("a", 80, 24, bound)
            await reg.create("b", 80, 24, gone)
            reg.detach(gone)
            await reg.create("c", 80, 24, Connection())
            assert "a" in reg and "c" in reg
            assert "b" not in reg
            assert not any(f["action"] == "exit" for f in _frames(bound))
        finally:
            await reg.cleanup()


class TestCheck:
    async def test_unknown(self, registry: SessionRegistry) -> None:
        assert await registry.check("nope", Connection()) is CheckResult.NOT_FOUND
        assert len(registry) == 0

    async def test_existing_rebinds(self, registry: SessionRegistry) -> None:
        first, second = Connection(), Connection()
        await registry.create("t1", 80, 24, first)
        assert await registry.check("t1", second) is CheckResult.EXISTS
        assert registry.bound_connection("t1") is second


class TestRouting:
    async def test_output_goes_to_bound_connection(
        self, registry: SessionRegistry
    ) -> None:
        conn = Connection()
        out = _Collector(conn)
        await registry.create("t1", 80, 24, conn)
        registry.input("t1", "echo $((40 + 2))\r")
        await out.wait_for_output("42")
        frames = out.drain()
        assert all(f["sessionId"] == "t1" for f in frames)
        assert all(f["type"] == "terminal" for f in frames)

    async def test_reattach_moves_output(self, registry: SessionRegistry) -> None:
        old, new = Connection(), Connection()
        await registry.create("t1", 80, 24, old)
        registry.detach(old)
        old.pending()
        assert registry.bound_connection("t1") is None
        assert registry.get("t1") is not None

        out = _Collector(new)
        assert await registry.check("t1", new) is CheckResult.EXISTS
        registry.input("t1", "echo re$((1 + 1))attached\r")
        await out.wait_for_output("re2attached")
        assert "re2attached" not in "".join(old.pending())

    async def test_exit_sent_once_to_last_bound(
        self, registry: SessionRegistry
    ) -> None:
        first, second = Connection(), Connection()
        await registry.create("t1", 80, 24, first)
        await registry.check("t1", second)
        out = _Collector(second)
        registry.input("t1", "exit 7\r")
        await out.wait_for_action("exit")
        await asyncio.sleep(0.1)

        exits = [f for f in out.drain() if f["action"] == "exit"]
        assert len(exits) == 1
        assert exits[0]["exitCode"] == 7
        assert not any(f["action"] == "exit" for f in _frames(first))
        assert "t1" not in registry
        assert len(registry) == 0

    async def test_split_utf8_survives(self, registry: SessionRegistry) -> None:
        conn = Connection()
        out = _Collector(conn)
        await registry.create("t1", 80, 24, conn)
        # 'é' is \303\251; emit it split across two writes.
        registry.input("t1", "printf '\\303'; sleep 0.1; printf '\\251\\n'\r")
        await out.wait_for_output("é")
        assert "�" not in out.output()


class TestDuringSpawn:
    async def test_check_waits_for_spawn(self, registry: SessionRegistry) -> None:
        creator, checker = Connection(), Connection()
        created, checked = await asyncio.gather(
            registry.create("t1", 80, 24, creator),
            registry.check("t1", checker),
        )
        assert created is CreateResult.CREATED
        assert checked is CheckResult.EXISTS
        assert registry.bound_connection("t1") is checker

    async def test_destroy_during_spawn(self, registry: SessionRegistry) -> None:
        async def destroy() -> bool:
            return registry.destroy("t1")

        created, destroyed = await asyncio.gather(
            registry.create("t1", 80, 24, Connection()), destroy()
        )
        assert created is CreateResult.CREATED
        assert destroyed is True
        assert "t1" not in registry
        assert len(registry) == 0


class TestMisses:
    async def test_input_unknown(self, registry: SessionRegistry) -> None:
        assert registry.input("nope", "ls\r") is False
        assert len(registry) == 0

    async def test_resize_unknown(self, registry: SessionRegistry) -> None:
        assert registry.resize("nope", 100, 40) is False
        assert len(registry) == 0

    async def test_destroy_unknown(self, registry: SessionRegistry) -> None:
        assert registry.destroy("nope") is False


class TestDestroy:
    async def test_destroy_sends_no_exit(self, registry: SessionRegistry) -> None:
        conn = Connection()
        await registry.create("t1", 80, 24, conn)
        session = registry.get("t1")
        assert registry.destroy("t1") is True
        assert registry.destroy("t1") is False
        await session.wait_for_exit(timeout=5)
        await asyncio.sleep(0.05)
        assert not any(f["action"] == "exit" for f in _frames(conn))
        assert "t1" not in registry

    async def test_recreate_after_destroy(self, registry: SessionRegistry) -> None:
        conn = Connection()
        await registry.create("t1", 80, 24, conn)
        old_pid = registry.get("t1").pid
        registry.destroy("t1")
        assert await registry.create("t1", 80, 24, conn) is CreateResult.CREATED
        assert registry.get("t1").pid != old_pid

    async def test_cleanup_kills_everything(self, tmp_path: Path) -> None:
        reg = SessionRegistry(root=tmp_path, command=["/bin/sh"])
        await reg.create("a", 80, 24, Connection())
        await reg.create("b", 80, 24, Connection())
        sessions = [reg.get("a"), reg.get("b")]
        await reg.cleanup()
        assert len(reg) == 0
        assert all(not s.alive for s in sessions)

    async def test_list_sessions(self, registry: SessionRegistry) -> None:
        conn = Connection("c1")
        await registry.create("t1", 90, 30, conn)
        [info] = registry.list_sessions()
        assert info["id"] == "t1"
        assert info["alive"] is True
        assert (info["cols"], info["rows"]) == (90, 30)
        assert info["connection"] == "c1"
