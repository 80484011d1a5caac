#!/usr/bin/env python3
"""
Tools Package

Process execution for agents, exposed as five tools (spawn, ps, stdin,
stdout, kill) over a pluggable executor:

- process_tool: tool schemas, argument validation and dispatch
- process_registry: per-process records and bounded retention
- environments: host (optional bubblewrap sandbox) and Docker backends
- terminal_emulator: headless screen for TTY output
- process_output: escape decoding, truncation, line windows
"""

from .process_tool import (
    PROCESS_TOOL_SCHEMAS,
    ToolResponse,
    dispatch,
)

from .results import (
    ErrorCode,
    Result,
    ok,
    err,
)

__all__ = [
    'PROCESS_TOOL_SCHEMAS',
    'ToolResponse',
    'dispatch',
    'ErrorCode',
    'Result',
    'ok',
    'err',
]
