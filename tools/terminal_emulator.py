"""
Virtual terminal for TTY sessions.

Interactive programs write ANSI control sequences (cursor movement, colors,
line clearing). Reading the raw bytes back would hand those codes to the
caller, so every TTY session owns a headless 120x30 screen with scrollback
that absorbs them. ``render_terminal_buffer`` turns the screen into plain
text on demand.

pyte's ByteStream keeps both the UTF-8 decoder and the escape-sequence
parser state between feeds, so output split at arbitrary byte boundaries
renders identically to output written in one piece.
"""

from typing import List, Union

import pyte

from process_constants import TERMINAL_COLS, TERMINAL_HISTORY, TERMINAL_ROWS


class TerminalEmulator:
    """Headless terminal screen fed incrementally with process output."""

    def __init__(
        self,
        cols: int = TERMINAL_COLS,
        rows: int = TERMINAL_ROWS,
        history: int = TERMINAL_HISTORY,
    ):
        self.cols = cols
        self.rows = rows
        self.screen = pyte.HistoryScreen(cols, rows, history=history)
        # Line feed implies carriage return, so bare "\n" starts a new line.
        self.screen.set_mode(pyte.modes.LNM)
        self._stream = pyte.ByteStream(self.screen)

    def feed(self, data: Union[bytes, str]) -> None:
        if isinstance(data, str):
            data = data.encode("utf-8")
        if data:
            self._stream.feed(data)


def _history_line_text(line, columns: int) -> str:
    return "".join(line[x].data for x in range(columns))


def render_terminal_buffer(terminal: TerminalEmulator) -> str:
    """
    Render scrollback plus the visible screen as plain text.

    Each row is right-trimmed and trailing blank rows are dropped. Pure: the
    terminal is only read, so repeated calls return the same text.
    """
    screen = terminal.screen
    lines: List[str] = [
        _history_line_text(line, screen.columns).rstrip()
        for line in screen.history.top
    ]
    lines.extend(row.rstrip() for row in screen.display)

    while lines and not lines[-1]:
        lines.pop()
    return "\n".join(lines)
