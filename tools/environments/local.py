"""Host execution backend: commands run as direct OS processes."""

import asyncio
import codecs
import logging
import os
import signal
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

import ptyprocess

from process_constants import TERMINAL_COLS, TERMINAL_ROWS
from tools.environments.base import ProcessExecutor, default_shell
from tools.process_registry import ProcessSession, SpawnOptions
from tools.results import ErrorCode, Result, err, ok
from tools.sandbox import BubblewrapSandbox, SandboxUnavailableError

logger = logging.getLogger(__name__)

# How long to keep draining pipes after the child exits. Background
# grandchildren can hold the pipes open indefinitely.
_DRAIN_TIMEOUT = 2.0


@dataclass
class _HostChild:
    """Side-table entry for a live host transport."""
    pid: int
    process: Optional[asyncio.subprocess.Process] = None
    pty: Optional[ptyprocess.PtyProcess] = None
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    def send_signal(self, sig: signal.Signals) -> None:
        # The child leads its own session, so signal the whole group first.
        try:
            os.killpg(self.pid, sig)
            return
        except (ProcessLookupError, PermissionError):
            pass
        if self.pty is not None:
            self.pty.kill(sig)
        elif self.process is not None:
            self.process.send_signal(sig)


async def _pump(stream: asyncio.StreamReader, sink: Callable[[str], None]) -> None:
    """Copy a pipe into a session buffer, decoding UTF-8 across chunk boundaries."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            break
        text = decoder.decode(chunk)
        if text:
            sink(text)
    tail = decoder.decode(b"", final=True)
    if tail:
        sink(tail)


class HostExecutor(ProcessExecutor):
    """Run commands directly on the host machine.

    Features:
    - Pipes for plain commands, a real pseudo-terminal (ptyprocess) for TTY
      sessions so interactive programs behave as they would in a terminal
    - Optional bubblewrap sandbox around every command
    - Every child leads its own session, so signals reach its whole group
    """

    id_prefix = "host"

    def __init__(self, config, shell: Optional[str] = None):
        super().__init__(config)
        self.shell = shell or default_shell()
        self.sandbox: Optional[BubblewrapSandbox] = None
        self._children: Dict[str, _HostChild] = {}

    # ----- Lifecycle -----

    async def _initialize(self) -> Result:
        try:
            if self.config.sandbox is not None:
                self.sandbox = BubblewrapSandbox(self.config.sandbox, shell=self.shell)
                try:
                    await asyncio.to_thread(self.sandbox.initialize)
                    logger.info("Sandbox initialized successfully")
                except SandboxUnavailableError as e:
                    logger.warning("Sandbox initialization failed (continuing without sandbox): %s", e)
                    logger.warning("To use sandbox features, install bubblewrap: apt install bubblewrap")
            return ok()
        except Exception as e:
            logger.error("Host executor initialization error: %s", e)
            return err(ErrorCode.INITIALIZATION_FAILED,
                       f"Failed to initialize host executor: {e}", e)

    async def _close_transports(self) -> None:
        tasks = []
        for pid, child in list(self._children.items()):
            try:
                child.send_signal(signal.SIGTERM)
            except Exception as e:
                logger.debug("Failed to terminate %s during cleanup: %s", pid, e)
            if child.task is not None:
                child.task.cancel()
                tasks.append(child.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._children.clear()

    async def _release(self) -> None:
        if self.sandbox is not None:
            self.sandbox.reset()

    # ----- Spawn -----

    def _prepare_command(self, session: ProcessSession) -> str:
        if self.sandbox is None or not self.sandbox.available:
            return session.command
        try:
            return self.sandbox.wrap_command(session.command, session.cwd)
        except Exception as e:
            logger.warning("Sandbox wrapping failed, using unwrapped command: %s", e)
            return session.command

    def _transport_error(self, session: ProcessSession, error: BaseException) -> None:
        session.append_stderr(f"\nProcess error: {error}")
        session.mark_terminated(1)

    async def _start(self, session: ProcessSession, options: SpawnOptions) -> None:
        command = self._prepare_command(session)
        env = os.environ | session.env
        try:
            if session.tty:
                child = self._start_pty(session, command, env)
            else:
                child = await self._start_pipes(session, command, env)
        except OSError as e:
            logger.warning("Process %s failed to start: %s", session.id, e)
            self._transport_error(session, e)
            return

        session.os_pid = child.pid
        self._children[session.id] = child

    async def _start_pipes(self, session: ProcessSession, command: str, env: Dict[str, str]) -> _HostChild:
        proc = await asyncio.create_subprocess_exec(
            self.shell, "-c", command,
            cwd=session.cwd,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        child = _HostChild(pid=proc.pid, process=proc)
        child.task = asyncio.create_task(self._supervise_pipes(session, proc))
        return child

    async def _supervise_pipes(self, session: ProcessSession, proc: asyncio.subprocess.Process) -> None:
        readers = [
            asyncio.create_task(_pump(proc.stdout, session.append_stdout)),
            asyncio.create_task(_pump(proc.stderr, session.append_stderr)),
        ]
        exit_code: Optional[int] = None
        try:
            returncode = await proc.wait()
            # A negative code means the child died from a signal: no exit code.
            exit_code = returncode if returncode >= 0 else None
            done, pending = await asyncio.wait(readers, timeout=_DRAIN_TIMEOUT)
            for task in done:
                if task.exception() is not None:
                    logger.debug("Output reader for %s ended: %s", session.id, task.exception())
            for task in pending:
                task.cancel()
        except asyncio.CancelledError:
            for task in readers:
                task.cancel()
            raise
        except Exception as e:
            logger.debug("Process %s transport error: %s", session.id, e)
            self._transport_error(session, e)
        finally:
            self._children.pop(session.id, None)
            session.mark_terminated(exit_code)

    def _start_pty(self, session: ProcessSession, command: str, env: Dict[str, str]) -> _HostChild:
        pty = ptyprocess.PtyProcess.spawn(
            [self.shell, "-c", command],
            cwd=session.cwd,
            env=env,
            dimensions=(TERMINAL_ROWS, TERMINAL_COLS),
        )
        loop = asyncio.get_running_loop()
        eof: asyncio.Future = loop.create_future()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        def _on_readable():
            try:
                chunk = os.read(pty.fd, 4096)
            except OSError:
                # EIO once the last slave descriptor closes
                chunk = b""
            if not chunk:
                loop.remove_reader(pty.fd)
                if not eof.done():
                    eof.set_result(None)
                return
            session.append_stdout(decoder.decode(chunk), raw=chunk)

        loop.add_reader(pty.fd, _on_readable)
        child = _HostChild(pid=pty.pid, pty=pty)
        child.task = asyncio.create_task(self._supervise_pty(session, pty, eof))
        return child

    async def _supervise_pty(self, session: ProcessSession, pty: ptyprocess.PtyProcess,
                             eof: asyncio.Future) -> None:
        exit_code: Optional[int] = None
        try:
            await eof
            try:
                await asyncio.to_thread(pty.wait)
            except Exception as e:
                logger.debug("PTY wait for %s failed: %s", session.id, e)
            exit_code = pty.exitstatus if pty.signalstatus is None else None
        finally:
            asyncio.get_running_loop().remove_reader(pty.fd)
            try:
                # close() sleeps (and may terminate the child), so keep it off the loop
                await asyncio.to_thread(pty.close, True)
            except Exception as e:
                logger.debug("PTY close for %s failed: %s", session.id, e)
            self._children.pop(session.id, None)
            session.mark_terminated(exit_code)

    # ----- Interaction -----

    async def _write_input(self, session: ProcessSession, data: bytes) -> None:
        child = self._children.get(session.id)
        if child is None or child.pty is None:
            raise RuntimeError(f"No terminal attached to process {session.id}")
        child.pty.write(data)

    async def _signal(self, session: ProcessSession, sig: signal.Signals) -> Result:
        child = self._children.get(session.id)
        if child is None:
            return err(ErrorCode.PROCESS_NOT_FOUND, "Child process not found")
        try:
            child.send_signal(sig)
        except ProcessLookupError:
            # Already gone; the supervisor will record the exit.
            logger.debug("Process %s exited before %s was delivered", session.id, sig.name)
        except OSError as e:
            return err(ErrorCode.KILL_FAILED, f"Failed to kill process: {e}", e)
        logger.info("Sent %s to %s", sig.name, session.id)
        return ok()
