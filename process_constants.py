"""Shared constants for process-mcp.

Import-safe module with no dependencies -- can be imported from anywhere
without risk of circular imports.
"""

# Timeouts (milliseconds)
DEFAULT_TIMEOUT_MS = 10_000
MAX_TIMEOUT_MS = 60_000

# Spawn results keep only the trailing window of each stream
OUTPUT_TRUNCATE = 8196
TRUNCATION_MARKER = "\n... (truncated)"

# Default number of lines returned by read_output
DEFAULT_OUTPUT_LINES = 100

# Virtual terminal geometry for TTY sessions
TERMINAL_COLS = 120
TERMINAL_ROWS = 30
TERMINAL_HISTORY = 1000

# Finished processes kept in the registry
MAX_TERMINATED_PROCESSES = 5

DEFAULT_WORKDIR = "/home/agent"
