"""
Executor contract shared by the host and container backends.

``ProcessExecutor`` owns everything that does not depend on the transport:
the registry, option defaults and clamping, the completion-vs-timeout race,
id lookups and state validation, output windowing. Subclasses implement the
transport hooks:

    _initialize()                  -> Result   backend setup
    _start(session, options)       -> None     attach a live transport
    _write_input(session, data)    -> None     forward stdin bytes
    _signal(session, sig)          -> Result   deliver a signal
    _close_transports()            -> None     best-effort stop of everything
    _ready()                       -> Result   optional pre-spawn check
    _release()                     -> None     optional, free backend resources

Callers only ever see ``Result`` values; nothing raises across this surface.
"""

import asyncio
import itertools
import logging
import os
import shutil
import signal as signal_module
from abc import ABC, abstractmethod
from typing import Dict, List

from process_constants import DEFAULT_OUTPUT_LINES, MAX_TIMEOUT_MS
from tools.process_output import (
    escape_sequences_to_bytes,
    resolve_signal,
    truncate_output,
    window_lines,
)
from tools.process_registry import (
    ProcessInfo,
    ProcessRegistry,
    ProcessSession,
    SpawnOptions,
    SpawnResult,
)
from tools.results import ErrorCode, Result, err, ok

logger = logging.getLogger(__name__)


def default_shell() -> str:
    """The user's shell, for consistency with what they'd get in a terminal."""
    return os.environ.get("SHELL") or shutil.which("bash") or "/bin/bash"


class ProcessExecutor(ABC):
    """Spawn, observe, feed and terminate processes on one backend."""

    #: Prefix of process ids created by this backend ("host", "docker").
    id_prefix = "proc"

    def __init__(self, config):
        self.config = config
        self.registry = ProcessRegistry()
        self._initialized = False
        self._id_counter = itertools.count(1)

    # ----- Lifecycle -----

    async def initialize(self) -> Result:
        """Prepare the backend. Idempotent."""
        if self._initialized:
            return ok()
        result = await self._initialize()
        if result.success:
            self._initialized = True
        return result

    async def teardown(self) -> None:
        """Stop every live transport, forget all processes, release resources. Never raises."""
        try:
            await self._close_transports()
        except Exception as e:
            logger.debug("Error closing transports during teardown: %s", e)
        self.registry.clear()
        try:
            await self._release()
        except Exception as e:
            logger.debug("Error releasing backend during teardown: %s", e)
        self._initialized = False

    # ----- Spawn -----

    def _next_id(self) -> str:
        return f"{self.id_prefix}-{next(self._id_counter)}"

    def _effective_timeout(self, timeout_ms) -> float:
        """Timeout in seconds: caller value or default, clamped to the maximum."""
        defaults = self.config.defaults
        requested = timeout_ms if timeout_ms is not None else defaults.timeout_ms
        ceiling = min(defaults.max_timeout_ms, MAX_TIMEOUT_MS)
        return max(min(requested, ceiling), 0) / 1000.0

    async def spawn(self, options: SpawnOptions) -> Result:
        """
        Start a command and wait for it, up to the timeout.

        Returns a terminated result if the process finishes in time. Otherwise
        (or immediately, with ``background=True``) returns ``status="running"``
        with the output captured so far; the process keeps running and is
        reachable through its id.
        """
        if not self._initialized:
            init_result = await self.initialize()
            if not init_result.success:
                return init_result
        ready = self._ready()
        if not ready.success:
            return ready

        if not options.command or not options.command.strip():
            return err(ErrorCode.SPAWN_FAILED, "Command must not be empty")

        session = ProcessSession(
            id=self._next_id(),
            command=options.command,
            cwd=options.cwd or self.config.defaults.workdir,
            env=dict(options.env or {}),
            tty=options.tty,
        )
        # Registered before the transport exists, so no caller can observe
        # a process the registry does not know about.
        self.registry.add(session)
        logger.info("Spawning %s (tty=%s, background=%s): %s",
                    session.id, session.tty, options.background, session.command[:200])

        try:
            await self._start(session, options)
        except Exception as e:
            logger.error("Failed to spawn %s: %s", session.id, e)
            session.append_stderr(f"\nSpawn error: {e}")
            session.mark_terminated(1)
            return err(ErrorCode.SPAWN_FAILED, f"Failed to spawn process: {e}", e)

        if options.background:
            return ok(self._spawn_result(session))

        timeout = self._effective_timeout(options.timeout_ms)
        try:
            await asyncio.wait_for(session.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            # Only the wait is abandoned; the transport keeps running.
            logger.info("Process %s still running after %.1fs, moved to background",
                        session.id, timeout)

        return ok(self._spawn_result(session))

    def _spawn_result(self, session: ProcessSession) -> SpawnResult:
        return SpawnResult(
            pid=session.id,
            status=session.status,
            exit_code=session.exit_code,
            stdout=truncate_output(session.rendered_stdout()),
            stderr=truncate_output(session.stderr),
        )

    # ----- Interaction -----

    def _lookup_running(self, pid: str) -> Result:
        session = self.registry.get(pid)
        if session is None:
            return err(ErrorCode.PROCESS_NOT_FOUND, f"Process {pid} not found")
        if not session.running:
            return err(ErrorCode.PROCESS_TERMINATED, "Process has already terminated")
        return ok(session)

    async def send_input(self, pid: str, text: str) -> Result:
        """Decode escape sequences in ``text`` and write the bytes to a TTY process."""
        session = self.registry.get(pid)
        if session is None:
            return err(ErrorCode.PROCESS_NOT_FOUND, f"Process {pid} not found")
        if not session.tty:
            return err(ErrorCode.NOT_TTY,
                       "Process is not in TTY mode. Only TTY processes can receive stdin.")
        if not session.running:
            return err(ErrorCode.PROCESS_TERMINATED, "Process has already terminated")

        try:
            await self._write_input(session, escape_sequences_to_bytes(text))
        except Exception as e:
            return err(ErrorCode.STDIN_FAILED, f"Failed to write to stdin: {e}", e)
        return ok()

    def list_processes(self) -> List[ProcessInfo]:
        return [session.info() for session in self.registry.list()]

    def read_output(self, pid: str, lines: int = DEFAULT_OUTPUT_LINES) -> Result:
        """Last ``lines`` lines of stdout (rendered terminal for TTY) and stderr."""
        session = self.registry.get(pid)
        if session is None:
            return err(ErrorCode.PROCESS_NOT_FOUND, f"Process {pid} not found")
        output: Dict[str, str] = {
            "stdout": window_lines(session.rendered_stdout(), lines),
            "stderr": window_lines(session.stderr, lines),
        }
        return ok(output)

    async def terminate(self, pid: str, signal: str = "SIGTERM") -> Result:
        """Deliver ``signal`` to a running process without waiting for it to exit."""
        lookup = self._lookup_running(pid)
        if not lookup.success:
            return lookup
        try:
            sig = resolve_signal(signal)
        except ValueError as e:
            return err(ErrorCode.KILL_FAILED, str(e), e)
        return await self._signal(lookup.value, sig)

    # ----- Transport hooks -----

    @abstractmethod
    async def _initialize(self) -> Result:
        ...

    @abstractmethod
    async def _start(self, session: ProcessSession, options: SpawnOptions) -> None:
        ...

    @abstractmethod
    async def _write_input(self, session: ProcessSession, data: bytes) -> None:
        ...

    @abstractmethod
    async def _signal(self, session: ProcessSession, sig: signal_module.Signals) -> Result:
        ...

    @abstractmethod
    async def _close_transports(self) -> None:
        ...

    def _ready(self) -> Result:
        """Checked before every spawn, after initialization."""
        return ok()

    async def _release(self) -> None:
        pass
