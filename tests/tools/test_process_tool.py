"""
Tests for the agent-facing process tools (tools/process_tool.py).

Covers: schema shape, argument validation, result rendering and dispatch
error handling. Executor calls go to a real HostExecutor where behaviour
matters and to mocks where only the plumbing is under test.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from process_cli.config import DefaultsConfig, ProcessMcpConfig
from tools.environments.local import HostExecutor
from tools.process_tool import PROCESS_TOOL_SCHEMAS, ToolResponse, dispatch
from tools.results import ErrorCode, err, ok


@pytest_asyncio.fixture()
async def executor(tmp_path):
    config = ProcessMcpConfig(mode="host", sandbox=None, defaults=DefaultsConfig(workdir=str(tmp_path)))
    host = HostExecutor(config, shell="/bin/sh")
    yield host
    await host.teardown()


class TestSchemas:
    def test_tool_names(self):
        assert [s["name"] for s in PROCESS_TOOL_SCHEMAS] == ["spawn", "ps", "stdin", "stdout", "kill"]

    def test_required_fields(self):
        required = {s["name"]: s["parameters"].get("required", []) for s in PROCESS_TOOL_SCHEMAS}
        assert required == {
            "spawn": ["command"],
            "ps": [],
            "stdin": ["id", "input"],
            "stdout": ["id"],
            "kill": ["id"],
        }

    def test_every_tool_has_description(self):
        assert all(s["description"] for s in PROCESS_TOOL_SCHEMAS)


class TestDispatch:
    @pytest.mark.asyncio
    async def test_spawn_renders_json(self, executor):
        response = await dispatch(executor, "spawn", {"command": "echo hi"})
        assert not response.is_error
        assert json.loads(response.text) == {
            "pid": "host-1",
            "status": "terminated",
            "exit_code": 0,
            "stdout": "hi\n",
            "stderr": "",
        }

    @pytest.mark.asyncio
    async def test_ps_lists_processes(self, executor):
        await dispatch(executor, "spawn", {"command": "true"})
        response = await dispatch(executor, "ps", {})
        listed = json.loads(response.text)
        assert [p["pid"] for p in listed] == ["host-1"]
        assert set(listed[0]) == {"pid", "command", "status", "exit_code", "cwd", "tty", "created_at"}

    @pytest.mark.asyncio
    async def test_ps_empty(self, executor):
        response = await dispatch(executor, "ps")
        assert json.loads(response.text) == []

    @pytest.mark.asyncio
    async def test_stdout(self, executor):
        await dispatch(executor, "spawn", {"command": "echo a; echo b; echo c"})
        response = await dispatch(executor, "stdout", {"id": "host-1", "lines": 2})
        assert json.loads(response.text) == {"stdout": "c\n", "stderr": ""}

    @pytest.mark.asyncio
    async def test_kill_message(self, executor):
        await dispatch(executor, "spawn", {"command": "sleep 30", "background": True})
        response = await dispatch(executor, "kill", {"id": "host-1", "signal": "SIGKILL"})
        assert response == ToolResponse("Process host-1 killed successfully")

    @pytest.mark.asyncio
    async def test_stdin_message(self):
        executor = MagicMock()
        executor.send_input = AsyncMock(return_value=ok())
        response = await dispatch(executor, "stdin", {"id": "host-1", "input": "y\\n"})
        assert response == ToolResponse("Input sent successfully")
        executor.send_input.assert_awaited_once_with("host-1", "y\\n")

    @pytest.mark.asyncio
    async def test_executor_error_rendered(self, executor):
        response = await dispatch(executor, "kill", {"id": "host-404"})
        assert response.is_error
        assert json.loads(response.text) == {
            "error": "process_not_found",
            "message": "Process host-404 not found",
        }

    @pytest.mark.asyncio
    async def test_error_cause_included(self):
        executor = MagicMock()
        executor.send_input = AsyncMock(
            return_value=err(ErrorCode.STDIN_FAILED, "Failed to write to stdin", OSError("broken pipe"))
        )
        response = await dispatch(executor, "stdin", {"id": "host-1", "input": "x"})
        assert json.loads(response.text)["cause"] == "broken pipe"

    @pytest.mark.asyncio
    async def test_unknown_tool(self, executor):
        response = await dispatch(executor, "rm", {})
        assert response.is_error
        assert json.loads(response.text)["error"] == "unknown_tool"

    @pytest.mark.asyncio
    async def test_unexpected_exception(self):
        executor = MagicMock()
        executor.list_processes.side_effect = RuntimeError("boom")
        response = await dispatch(executor, "ps", {})
        data = json.loads(response.text)
        assert data["error"] == "tool_error"
        assert "boom" in data["message"]


class TestValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("name,args", [
        ("spawn", {}),
        ("spawn", {"command": ""}),
        ("spawn", {"command": 42}),
        ("spawn", {"command": "ls", "timeout_ms": 0}),
        ("spawn", {"command": "ls", "timeout_ms": "soon"}),
        ("spawn", {"command": "ls", "tty": "yes"}),
        ("spawn", {"command": "ls", "env": {"A": 1}}),
        ("stdin", {"id": "host-1"}),
        ("stdout", {"id": "host-1", "lines": -5}),
        ("stdout", {"id": "host-1", "lines": True}),
        ("kill", {}),
    ])
    async def test_invalid_arguments(self, executor, name, args):
        response = await dispatch(executor, name, args)
        assert response.is_error
        assert json.loads(response.text)["error"] == "invalid_arguments"

    @pytest.mark.asyncio
    async def test_arguments_must_be_object(self, executor):
        response = await dispatch(executor, "ps", ["not", "a", "dict"])
        assert json.loads(response.text)["error"] == "invalid_arguments"

    @pytest.mark.asyncio
    async def test_none_values_use_defaults(self):
        executor = MagicMock()
        executor.terminate = AsyncMock(return_value=ok())
        executor.read_output = MagicMock(return_value=ok({"stdout": "", "stderr": ""}))
        await dispatch(executor, "kill", {"id": "host-1", "signal": None})
        await dispatch(executor, "stdout", {"id": "host-1", "lines": None})
        executor.terminate.assert_awaited_once_with("host-1", "SIGTERM")
        executor.read_output.assert_called_once_with("host-1", 100)
