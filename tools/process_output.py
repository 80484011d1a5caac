"""Helpers for shaping process input and output.

- Escape decoding for text sent to interactive processes (``\\n``, ``\\xHH`` ...)
- Trailing-window truncation of spawn results
- Last-N-lines windowing for output reads
- Signal name resolution for terminate requests
"""

import re
import signal
from typing import Union

from process_constants import OUTPUT_TRUNCATE, TRUNCATION_MARKER

# One alternation so the input is scanned in a single forward pass.
_ESCAPE_RE = re.compile(r"\\(n|r|t|x[0-9A-Fa-f]{2}|u[0-9A-Fa-f]{4})")

_SIMPLE_ESCAPES = {"n": "\n", "r": "\r", "t": "\t"}


def _decode_escape(token: str) -> str:
    simple = _SIMPLE_ESCAPES.get(token)
    if simple is not None:
        return simple
    return chr(int(token[1:], 16))


def parse_escape_sequences(text: str) -> str:
    """
    Decode caller-supplied escape sequences into the characters they name.

    Recognizes ``\\n``, ``\\r``, ``\\t``, ``\\xHH`` and ``\\uHHHH``; anything
    else (including a lone backslash) passes through unchanged.

        >>> parse_escape_sequences("a\\\\x41b")
        'aAb'
    """
    return _ESCAPE_RE.sub(lambda m: _decode_escape(m.group(1)), text)


def escape_sequences_to_bytes(text: str) -> bytes:
    """
    Decode escape sequences straight to the bytes written to a process.

    Same grammar as :func:`parse_escape_sequences`, but ``\\xHH`` produces
    exactly one raw byte (so ``\\xff`` is not re-encoded as UTF-8). Literal
    text and ``\\uHHHH`` characters are UTF-8 encoded.
    """
    out = bytearray()
    pos = 0
    for match in _ESCAPE_RE.finditer(text):
        out += text[pos:match.start()].encode("utf-8")
        token = match.group(1)
        if token[0] == "x":
            out.append(int(token[1:], 16))
        else:
            out += _decode_escape(token).encode("utf-8")
        pos = match.end()
    out += text[pos:].encode("utf-8")
    return bytes(out)


def truncate_output(output: str, limit: int = OUTPUT_TRUNCATE) -> str:
    """Keep the trailing ``limit`` characters, marking the cut explicitly."""
    if len(output) <= limit:
        return output
    return output[-limit:] + TRUNCATION_MARKER


def window_lines(text: str, lines: int) -> str:
    """Return the last ``lines`` newline-separated segments of ``text``."""
    if lines <= 0:
        return text
    return "\n".join(text.split("\n")[-lines:])


def resolve_signal(name: Union[str, int]) -> signal.Signals:
    """
    Resolve ``"SIGTERM"``, ``"TERM"``, ``"15"`` or ``15`` to a signal.

    Raises:
        ValueError: the name does not correspond to a signal on this platform.
    """
    if isinstance(name, int) or str(name).strip().isdigit():
        return signal.Signals(int(name))
    normalized = str(name).strip().upper()
    if not normalized.startswith("SIG"):
        normalized = "SIG" + normalized
    try:
        return signal.Signals[normalized]
    except KeyError:
        raise ValueError(f"Unknown signal: {name}") from None
