#!/usr/bin/env python3
"""
Process Tool Module - Agent-facing process control

Five tools over a ProcessExecutor:

- spawn:  run a command, waiting up to a timeout before moving it to the background
- ps:     list running and recently finished processes
- stdin:  send (escape-decoded) input to a TTY process
- stdout: read the last N lines of a process's output
- kill:   signal a running process

Every handler returns a ToolResponse: the text shown to the agent plus an
``is_error`` flag. Errors are rendered as a JSON object
``{"error": <code>, "message": ..., "cause"?: ...}``.

Usage:
    from tools.process_tool import dispatch

    response = await dispatch(executor, "spawn", {"command": "ls -la"})
    print(response.text)
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict

from process_constants import DEFAULT_OUTPUT_LINES, DEFAULT_WORKDIR
from tools.process_registry import SpawnOptions
from tools.results import ErrorCode, Result

logger = logging.getLogger(__name__)


@dataclass
class ToolResponse:
    text: str
    is_error: bool = False


def _error_response(code: ErrorCode, message: str, cause: Any = None) -> ToolResponse:
    data = {"error": ErrorCode(code).value, "message": message}
    if cause is not None:
        data["cause"] = str(cause)
    return ToolResponse(json.dumps(data, indent=2), is_error=True)


def _result_response(result: Result) -> ToolResponse:
    """Render a Result: error JSON on failure, the value (as JSON unless a string) on success."""
    if not result.success:
        return ToolResponse(json.dumps(result.to_dict(), indent=2), is_error=True)
    value = result.value
    if hasattr(value, "to_dict"):
        value = value.to_dict()
    if isinstance(value, str):
        return ToolResponse(value)
    return ToolResponse(json.dumps(value, indent=2, ensure_ascii=False))


class ToolArgumentError(ValueError):
    """Tool arguments failed validation."""


# =============================================================================
# Schemas
# =============================================================================

SPAWN_SCHEMA = {
    "name": "spawn",
    "description": (
        "Execute a command with optional timeout. Processes exceeding timeout "
        "automatically move to background. Use background=true to bypass timeout entirely."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The command to execute"
            },
            "cwd": {
                "type": "string",
                "description": f"Working directory (default: {DEFAULT_WORKDIR})"
            },
            "env": {
                "type": "object",
                "additionalProperties": {"type": "string"},
                "description": "Environment variables"
            },
            "tty": {
                "type": "boolean",
                "description": "Enable TTY mode for interactive applications"
            },
            "background": {
                "type": "boolean",
                "description": "Run in background (bypass timeout)"
            },
            "timeout_ms": {
                "type": "integer",
                "description": "Timeout in milliseconds (default: 10000, max: 60000)"
            },
        },
        "required": ["command"],
    },
}

PS_SCHEMA = {
    "name": "ps",
    "description": "List all running and recently terminated processes",
    "parameters": {"type": "object", "properties": {}},
}

STDIN_SCHEMA = {
    "name": "stdin",
    "description": (
        "Send input to an interactive process (TTY mode only). Supports escape sequences: "
        "\\n (newline), \\r (carriage return), \\t (tab), \\xHH (hex byte), \\uHHHH (unicode). "
        "Control sequences only work in TTY mode."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "id": {
                "type": "string",
                "description": "Process ID"
            },
            "input": {
                "type": "string",
                "description": "Input to send (supports escape sequences like \\n, \\r, \\xHH)"
            },
        },
        "required": ["id", "input"],
    },
}

STDOUT_SCHEMA = {
    "name": "stdout",
    "description": (
        "View process output. Returns stdout and stderr (or terminal buffer for TTY "
        "processes). Use lines parameter to limit output."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "id": {
                "type": "string",
                "description": "Process ID"
            },
            "lines": {
                "type": "integer",
                "description": f"Number of lines to retrieve (default: {DEFAULT_OUTPUT_LINES})"
            },
        },
        "required": ["id"],
    },
}

KILL_SCHEMA = {
    "name": "kill",
    "description": (
        "Terminate a process with a signal (default: SIGTERM). Common signals: "
        "SIGTERM (graceful), SIGKILL (force), SIGINT (Ctrl-C)."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "id": {
                "type": "string",
                "description": "Process ID"
            },
            "signal": {
                "type": "string",
                "description": "Signal to send (default: SIGTERM)"
            },
        },
        "required": ["id"],
    },
}

PROCESS_TOOL_SCHEMAS = [SPAWN_SCHEMA, PS_SCHEMA, STDIN_SCHEMA, STDOUT_SCHEMA, KILL_SCHEMA]


# =============================================================================
# Argument validation
# =============================================================================

def _require_str(args: Dict[str, Any], key: str, allow_empty: bool = True) -> str:
    value = args.get(key)
    if not isinstance(value, str):
        raise ToolArgumentError(f"'{key}' is required and must be a string")
    if not allow_empty and not value.strip():
        raise ToolArgumentError(f"'{key}' must not be empty")
    return value


def _optional(args: Dict[str, Any], key: str, kind, name: str):
    value = args.get(key)
    if value is None:
        return None
    # bool is an int subclass; never accept it where a number is expected
    if kind is int and isinstance(value, bool):
        raise ToolArgumentError(f"'{key}' must be {name}")
    if kind is int and isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, kind):
        raise ToolArgumentError(f"'{key}' must be {name}")
    return value


def _positive_int(args: Dict[str, Any], key: str):
    value = _optional(args, key, int, "an integer")
    if value is not None and value <= 0:
        raise ToolArgumentError(f"'{key}' must be a positive integer")
    return value


def _parse_spawn_args(args: Dict[str, Any]) -> SpawnOptions:
    env = _optional(args, "env", dict, "an object of strings")
    if env is not None and not all(isinstance(k, str) and isinstance(v, str) for k, v in env.items()):
        raise ToolArgumentError("'env' must map strings to strings")
    return SpawnOptions(
        command=_require_str(args, "command", allow_empty=False),
        cwd=_optional(args, "cwd", str, "a string"),
        env=env,
        tty=bool(_optional(args, "tty", bool, "a boolean")),
        background=bool(_optional(args, "background", bool, "a boolean")),
        timeout_ms=_positive_int(args, "timeout_ms"),
    )


# =============================================================================
# Handlers
# =============================================================================

async def handle_spawn(executor, args: Dict[str, Any]) -> ToolResponse:
    result = await executor.spawn(_parse_spawn_args(args))
    return _result_response(result)


async def handle_ps(executor, args: Dict[str, Any]) -> ToolResponse:
    processes = [info.to_dict() for info in executor.list_processes()]
    return ToolResponse(json.dumps(processes, indent=2, ensure_ascii=False))


async def handle_stdin(executor, args: Dict[str, Any]) -> ToolResponse:
    result = await executor.send_input(_require_str(args, "id"), _require_str(args, "input"))
    if not result.success:
        return _result_response(result)
    return ToolResponse("Input sent successfully")


async def handle_stdout(executor, args: Dict[str, Any]) -> ToolResponse:
    lines = _positive_int(args, "lines")
    result = executor.read_output(
        _require_str(args, "id"),
        lines if lines is not None else DEFAULT_OUTPUT_LINES,
    )
    return _result_response(result)


async def handle_kill(executor, args: Dict[str, Any]) -> ToolResponse:
    pid = _require_str(args, "id")
    signal_name = _optional(args, "signal", str, "a string") or "SIGTERM"
    result = await executor.terminate(pid, signal_name)
    if not result.success:
        return _result_response(result)
    return ToolResponse(f"Process {pid} killed successfully")


TOOL_HANDLERS: Dict[str, Callable[[Any, Dict[str, Any]], Awaitable[ToolResponse]]] = {
    "spawn": handle_spawn,
    "ps": handle_ps,
    "stdin": handle_stdin,
    "stdout": handle_stdout,
    "kill": handle_kill,
}


async def dispatch(executor, name: str, args: Dict[str, Any] = None) -> ToolResponse:
    """Route a tool call to its handler. Never raises."""
    handler = TOOL_HANDLERS.get(name)
    if handler is None:
        return _error_response(ErrorCode.UNKNOWN_TOOL, f"Unknown tool: {name}")
    if args is None:
        args = {}
    if not isinstance(args, dict):
        return _error_response(ErrorCode.INVALID_ARGUMENTS, "Tool arguments must be an object")

    try:
        return await handler(executor, args)
    except ToolArgumentError as e:
        return _error_response(ErrorCode.INVALID_ARGUMENTS, f"Invalid arguments for {name}: {e}")
    except Exception as e:
        logger.exception("Tool %s failed", name)
        return _error_response(ErrorCode.TOOL_ERROR, f"Tool execution failed: {e}", e)
