"""
Process Registry -- In-memory registry of spawned processes.

Tracks every process started through an executor, providing:
  - The per-process record (ProcessSession): identity, status, command
    metadata, accumulated stdout/stderr, optional virtual terminal
  - A completion event that fires once when the transport ends
  - Bounded retention: running processes are kept until they finish, and
    at most MAX_TERMINATED_PROCESSES finished ones are kept after that,
    checked whenever a session is added or finishes

The registry owns session lifetime once a session is added. Executors keep
only the id plus their own side table for the live transport (child
process, PTY, or container exec socket).

Usage:
    from tools.process_registry import ProcessRegistry, ProcessSession

    registry = ProcessRegistry()
    session = ProcessSession(id="host-1", command="sleep 5", cwd="/tmp")
    registry.add(session)

    session.append_stdout("hello\\n")
    session.mark_terminated(0)
    registry.info("host-1")
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from process_constants import MAX_TERMINATED_PROCESSES
from tools.terminal_emulator import TerminalEmulator, render_terminal_buffer

logger = logging.getLogger(__name__)

RUNNING = "running"
TERMINATED = "terminated"


@dataclass
class SpawnOptions:
    """Caller-supplied options for a spawn request."""
    command: str
    cwd: Optional[str] = None
    env: Optional[Dict[str, str]] = None
    tty: bool = False
    background: bool = False
    timeout_ms: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SpawnOptions":
        return cls(
            command=data["command"],
            cwd=data.get("cwd"),
            env=data.get("env"),
            tty=bool(data.get("tty", False)),
            background=bool(data.get("background", False)),
            timeout_ms=data.get("timeout_ms"),
        )


@dataclass
class SpawnResult:
    """What spawn reports back: a final result or a still-running handle."""
    pid: str
    status: str
    stdout: str
    stderr: str
    exit_code: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"pid": self.pid, "status": self.status}
        if self.exit_code is not None:
            result["exit_code"] = self.exit_code
        result["stdout"] = self.stdout
        result["stderr"] = self.stderr
        return result


@dataclass
class ProcessInfo:
    """Listing projection of a session. Never carries output or handles."""
    pid: str
    command: str
    status: str
    cwd: str
    tty: bool
    created_at: str
    exit_code: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "pid": self.pid,
            "command": self.command,
            "status": self.status,
        }
        if self.exit_code is not None:
            result["exit_code"] = self.exit_code
        result.update({
            "cwd": self.cwd,
            "tty": self.tty,
            "created_at": self.created_at,
        })
        return result


@dataclass
class ProcessSession:
    """One spawned command and everything captured from it."""
    id: str                                     # Backend-prefixed ID ("host-3", "docker-1")
    command: str                                # Original command string
    cwd: str                                    # Working directory
    env: Dict[str, str] = field(default_factory=dict)
    tty: bool = False                           # Fixed at creation
    status: str = RUNNING
    exit_code: Optional[int] = None             # None after termination = killed before reporting
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    stdout: str = ""                            # Append-only, never trimmed
    stderr: str = ""
    os_pid: Optional[int] = None                # Host child PID or PID reported from the container
    terminal: Optional[TerminalEmulator] = field(default=None, repr=False)
    completed: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    # Set by the registry so retention is enforced as soon as a session finishes
    on_terminated: Optional[Callable[["ProcessSession"], None]] = field(
        default=None, repr=False, compare=False)

    def __post_init__(self):
        if self.tty and self.terminal is None:
            self.terminal = TerminalEmulator()
        elif not self.tty:
            self.terminal = None

    @property
    def running(self) -> bool:
        return self.status == RUNNING

    def append_stdout(self, text: str, raw: Optional[bytes] = None) -> None:
        """Record a stdout chunk; TTY sessions also feed it to the terminal."""
        self.stdout += text
        if self.terminal is not None:
            self.terminal.feed(raw if raw is not None else text)

    def append_stderr(self, text: str) -> None:
        self.stderr += text

    def mark_terminated(self, exit_code: Optional[int]) -> None:
        """Flip to terminated and fire the completion event. Only the first call counts."""
        if self.status == TERMINATED:
            return
        self.status = TERMINATED
        self.exit_code = exit_code
        self.completed.set()
        logger.debug("Process %s terminated (exit_code=%s)", self.id, exit_code)
        if self.on_terminated is not None:
            self.on_terminated(self)

    async def wait(self) -> None:
        await self.completed.wait()

    def rendered_stdout(self) -> str:
        """Terminal text for TTY sessions, raw accumulated stdout otherwise."""
        if self.terminal is not None:
            return render_terminal_buffer(self.terminal)
        return self.stdout

    def info(self) -> ProcessInfo:
        return ProcessInfo(
            pid=self.id,
            command=self.command,
            status=self.status,
            exit_code=self.exit_code,
            cwd=self.cwd,
            tty=self.tty,
            created_at=self.created_at.isoformat(),
        )


class ProcessRegistry:
    """
    Keyed store of sessions with bounded retention of finished ones.

    All access happens on the event loop thread, so each method runs to
    completion without interleaving.
    """

    def __init__(self, max_terminated: int = MAX_TERMINATED_PROCESSES):
        self._sessions: Dict[str, ProcessSession] = {}
        self.max_terminated = max_terminated

    def add(self, session: ProcessSession) -> None:
        self._sessions[session.id] = session
        session.on_terminated = self._session_terminated
        self._prune_terminated()

    def get(self, session_id: str) -> Optional[ProcessSession]:
        return self._sessions.get(session_id)

    def list(self) -> List[ProcessSession]:
        return list(self._sessions.values())

    def info(self, session_id: str) -> Optional[ProcessInfo]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        return session.info()

    def delete(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def stats(self) -> Dict[str, int]:
        running = sum(1 for s in self._sessions.values() if s.running)
        total = len(self._sessions)
        return {"running": running, "terminated": total - running, "total": total}

    def clear(self) -> None:
        self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    # ----- Cleanup / Pruning -----

    def _session_terminated(self, session: ProcessSession) -> None:
        if self._sessions.get(session.id) is session:
            self._prune_terminated()

    def _prune_terminated(self):
        """Evict the oldest finished sessions beyond max_terminated."""
        # sorted() is stable, so equal timestamps keep insertion order.
        terminated = sorted(
            (s for s in self._sessions.values() if not s.running),
            key=lambda s: s.created_at,
        )
        excess = len(terminated) - self.max_terminated
        for session in terminated[:max(excess, 0)]:
            del self._sessions[session.id]
            logger.debug("Evicted finished process %s", session.id)
