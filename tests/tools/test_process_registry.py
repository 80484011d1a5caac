"""
Tests for the in-memory process registry in tools/process_registry.py.

Covers: ProcessSession state transitions and projections, bounded retention
of terminated sessions, SpawnOptions/SpawnResult serialization.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from tools.process_registry import (
    RUNNING,
    TERMINATED,
    ProcessRegistry,
    ProcessSession,
    SpawnOptions,
    SpawnResult,
)

_BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _session(n, terminated=False, tty=False):
    session = ProcessSession(
        id=f"host-{n}",
        command=f"echo {n}",
        cwd="/tmp",
        tty=tty,
        created_at=_BASE_TIME + timedelta(seconds=n),
    )
    if terminated:
        session.mark_terminated(0)
    return session


# ---------------------------------------------------------------------------
# TestProcessSession
# ---------------------------------------------------------------------------

class TestProcessSession:
    def test_starts_running(self):
        session = _session(1)
        assert session.status == RUNNING
        assert session.running
        assert session.exit_code is None

    def test_mark_terminated_sets_exit_code_once(self):
        session = _session(1)
        session.mark_terminated(3)
        session.mark_terminated(7)
        assert session.status == TERMINATED
        assert session.exit_code == 3

    def test_mark_terminated_without_exit_code(self):
        session = _session(1)
        session.mark_terminated(None)
        assert not session.running
        assert session.exit_code is None

    def test_output_is_append_only(self):
        session = _session(1)
        session.append_stdout("a")
        session.append_stdout("b\n")
        session.append_stderr("oops")
        assert session.stdout == "ab\n"
        assert session.stderr == "oops"

    def test_terminal_only_for_tty(self):
        assert _session(1).terminal is None
        assert _session(2, tty=True).terminal is not None

    def test_tty_output_rendered_through_terminal(self):
        session = _session(1, tty=True)
        session.append_stdout("\x1b[31mred\x1b[0m\n")
        assert session.rendered_stdout() == "red"
        # Raw text keeps the escape codes
        assert "\x1b[31m" in session.stdout

    def test_non_tty_rendered_stdout_is_raw(self):
        session = _session(1)
        session.append_stdout("line\n")
        assert session.rendered_stdout() == "line\n"

    @pytest.mark.asyncio
    async def test_wait_returns_after_termination(self):
        session = _session(1)
        waiter = asyncio.create_task(session.wait())
        await asyncio.sleep(0)
        assert not waiter.done()
        session.mark_terminated(0)
        await asyncio.wait_for(waiter, timeout=1)

    def test_info_projection(self):
        session = _session(1)
        session.append_stdout("secret output")
        info = session.info().to_dict()
        assert info == {
            "pid": "host-1",
            "command": "echo 1",
            "status": "running",
            "cwd": "/tmp",
            "tty": False,
            "created_at": session.created_at.isoformat(),
        }

    def test_info_includes_exit_code_when_known(self):
        session = _session(1, terminated=True)
        assert session.info().to_dict()["exit_code"] == 0


# ---------------------------------------------------------------------------
# TestProcessRegistry
# ---------------------------------------------------------------------------

class TestProcessRegistry:
    def test_add_and_get(self):
        registry = ProcessRegistry()
        session = _session(1)
        registry.add(session)
        assert registry.get("host-1") is session
        assert "host-1" in registry
        assert len(registry) == 1

    def test_get_unknown_returns_none(self):
        assert ProcessRegistry().get("host-404") is None
        assert ProcessRegistry().info("host-404") is None

    def test_delete(self):
        registry = ProcessRegistry()
        registry.add(_session(1))
        assert registry.delete("host-1") is True
        assert registry.delete("host-1") is False

    def test_keeps_at_most_five_terminated(self):
        registry = ProcessRegistry()
        for n in range(1, 8):
            registry.add(_session(n, terminated=True))
        ids = [s.id for s in registry.list()]
        assert ids == ["host-3", "host-4", "host-5", "host-6", "host-7"]

    def test_running_sessions_never_evicted(self):
        registry = ProcessRegistry()
        for n in range(1, 4):
            registry.add(_session(n))
        for n in range(4, 12):
            registry.add(_session(n, terminated=True))
        stats = registry.stats()
        assert stats["running"] == 3
        assert stats["terminated"] == 5
        assert all(registry.get(f"host-{n}") is not None for n in range(1, 4))

    def test_prune_when_session_terminates(self):
        registry = ProcessRegistry(max_terminated=1)
        first = _session(1)
        second = _session(2)
        registry.add(first)
        registry.add(second)
        first.mark_terminated(0)
        assert len(registry) == 2
        second.mark_terminated(0)
        assert registry.get("host-1") is None
        assert registry.get("host-2") is second

    def test_late_finishers_never_exceed_cap(self):
        registry = ProcessRegistry()
        sessions = [_session(n) for n in range(1, 9)]
        for session in sessions:
            registry.add(session)
        for session in sessions:
            session.mark_terminated(0)
            assert registry.stats()["terminated"] <= 5
        ids = [s.id for s in registry.list()]
        assert ids == ["host-4", "host-5", "host-6", "host-7", "host-8"]

    def test_clear(self):
        registry = ProcessRegistry()
        registry.add(_session(1))
        registry.clear()
        assert registry.list() == []


# ---------------------------------------------------------------------------
# TestValueTypes
# ---------------------------------------------------------------------------

class TestValueTypes:
    def test_spawn_options_from_dict(self):
        options = SpawnOptions.from_dict({"command": "ls", "tty": True, "timeout_ms": 500})
        assert options.command == "ls"
        assert options.tty is True
        assert options.background is False
        assert options.timeout_ms == 500
        assert options.cwd is None

    def test_spawn_result_omits_unknown_exit_code(self):
        result = SpawnResult(pid="host-1", status="running", stdout="", stderr="")
        assert "exit_code" not in result.to_dict()

    def test_spawn_result_with_exit_code(self):
        result = SpawnResult(pid="host-1", status="terminated", stdout="x", stderr="", exit_code=0)
        assert result.to_dict() == {
            "pid": "host-1",
            "status": "terminated",
            "exit_code": 0,
            "stdout": "x",
            "stderr": "",
        }
