#!/usr/bin/env python3
"""
MCP server factory for process-mcp.

Builds a FastMCP server exposing the five process tools over an executor
selected from the configuration:

    server = await create_process_mcp(load_config())
    await server.server.run_stdio_async()
    await server.cleanup()
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError

from tools.environments.base import ProcessExecutor
from tools.environments.docker import DockerExecutor
from tools.environments.local import HostExecutor
from tools.process_tool import (
    KILL_SCHEMA,
    PS_SCHEMA,
    SPAWN_SCHEMA,
    STDIN_SCHEMA,
    STDOUT_SCHEMA,
    dispatch,
)

logger = logging.getLogger(__name__)

SERVER_NAME = "process-mcp"


@dataclass
class ProcessMcpServer:
    server: FastMCP
    executor: ProcessExecutor
    cleanup: Callable[[], Awaitable[None]]


def create_executor(config) -> ProcessExecutor:
    """Pick the backend for ``config.mode``."""
    if config.mode == "docker":
        return DockerExecutor(config)
    return HostExecutor(config)


def build_server(executor: ProcessExecutor) -> FastMCP:
    """Register the process tools on a new FastMCP server."""
    mcp = FastMCP(SERVER_NAME)

    async def call(name: str, args: Dict[str, Any]) -> str:
        response = await dispatch(executor, name, args)
        if response.is_error:
            raise ToolError(response.text)
        return response.text

    @mcp.tool(name="spawn", description=SPAWN_SCHEMA["description"])
    async def spawn(
        command: str,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        tty: bool = False,
        background: bool = False,
        timeout_ms: Optional[int] = None,
    ) -> str:
        return await call("spawn", {
            "command": command,
            "cwd": cwd,
            "env": env,
            "tty": tty,
            "background": background,
            "timeout_ms": timeout_ms,
        })

    @mcp.tool(name="ps", description=PS_SCHEMA["description"])
    async def ps() -> str:
        return await call("ps", {})

    @mcp.tool(name="stdin", description=STDIN_SCHEMA["description"])
    async def stdin(id: str, input: str) -> str:
        return await call("stdin", {"id": id, "input": input})

    @mcp.tool(name="stdout", description=STDOUT_SCHEMA["description"])
    async def stdout(id: str, lines: Optional[int] = None) -> str:
        return await call("stdout", {"id": id, "lines": lines})

    @mcp.tool(name="kill", description=KILL_SCHEMA["description"])
    async def kill(id: str, signal: Optional[str] = None) -> str:
        return await call("kill", {"id": id, "signal": signal})

    return mcp


async def create_process_mcp(config, executor: Optional[ProcessExecutor] = None) -> ProcessMcpServer:
    """
    Create the executor, initialize it and wrap it in an MCP server.

    Raises:
        RuntimeError: the executor could not be initialized.
    """
    if executor is None:
        executor = create_executor(config)

    init_result = await executor.initialize()
    if not init_result.success:
        raise RuntimeError(f"Executor initialization failed: {init_result.message}")
    logger.info("Executor initialized (%s mode)", config.mode)

    async def cleanup() -> None:
        logger.info("Cleaning up...")
        await executor.teardown()

    return ProcessMcpServer(server=build_server(executor), executor=executor, cleanup=cleanup)
