"""
Result values returned across the executor boundary.

Executors never raise to their callers. Every fallible operation returns a
``Result`` carrying either a value or a stable machine-readable error code
plus a human-readable message (and, optionally, the underlying exception).

Usage:
    from tools.results import ok, err, ErrorCode

    def lookup(pid):
        if pid not in table:
            return err(ErrorCode.PROCESS_NOT_FOUND, f"Process {pid} not found")
        return ok(table[pid])
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorCode(str, Enum):
    """Error codes surfaced to callers."""
    INITIALIZATION_FAILED = "initialization_failed"
    SPAWN_FAILED = "spawn_failed"
    PROCESS_NOT_FOUND = "process_not_found"
    NOT_TTY = "not_tty"
    PROCESS_TERMINATED = "process_terminated"
    STDIN_FAILED = "stdin_failed"
    KILL_FAILED = "kill_failed"
    CONTAINER_NOT_FOUND = "container_not_found"
    CONFIG_MISSING = "config_missing"
    STREAM_NOT_FOUND = "stream_not_found"

    # Tool layer
    UNKNOWN_TOOL = "unknown_tool"
    INVALID_ARGUMENTS = "invalid_arguments"
    TOOL_ERROR = "tool_error"


@dataclass
class Result(Generic[T]):
    """Success/failure value. Check ``success`` before reading ``value``."""
    success: bool
    value: Optional[T] = None
    code: str = ""
    message: str = ""
    cause: Optional[BaseException] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {"success": True, "value": self.value}
        data = {"error": self.code, "message": self.message}
        if self.cause is not None:
            data["cause"] = str(self.cause)
        return data


def ok(value: Any = None) -> Result:
    return Result(success=True, value=value)


def err(code: ErrorCode, message: str, cause: Optional[BaseException] = None) -> Result:
    return Result(success=False, code=ErrorCode(code).value, message=message, cause=cause)
