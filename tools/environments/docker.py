"""Docker execution backend: commands run as exec sessions in one long-lived container.

The container is found by name (or created from the configured image with a
named volume mounted at the default workdir) and kept alive with
``tail -f /dev/null``. Every spawn is a separate ``docker exec`` whose
attach socket is read on the event loop (or from worker threads when the
daemon is reached over TLS or SSH).

Without a TTY the attach stream is multiplexed: each frame carries an 8-byte
header (stream type, three zero bytes, big-endian payload length). With a
TTY the stream is raw terminal output.
"""

import asyncio
import codecs
import logging
import re
import shlex
import signal
import socket
import ssl
import struct
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import docker
from docker.errors import APIError
from docker.utils.socket import STDERR, STDOUT

from tools.environments.base import ProcessExecutor
from tools.process_registry import ProcessSession, SpawnOptions
from tools.results import ErrorCode, Result, err, ok

logger = logging.getLogger(__name__)

_FRAME_HEADER = struct.Struct(">BxxxL")
_PID_MARKER_RE = re.compile(rb"^PID:(\d+)\r?$")

# Resource limits for containers we create ourselves
_MEM_LIMIT = "512m"
_NANO_CPUS = 1_000_000_000
_PIDS_LIMIT = 4096
_TMPFS = {
    "/tmp": "rw,noexec,nosuid,size=100m",
    "/var/tmp": "rw,noexec,nosuid,size=100m",
}
_KEEPALIVE_COMMAND = ["/bin/bash", "-c", "tail -f /dev/null"]


class ExecStreamDemuxer:
    """Incremental parser for the multiplexed exec attach stream.

    Frames may be split across reads (or several may arrive in one), so
    partial frames are buffered until their payload is complete.
    """

    def __init__(self):
        self._buffer = bytearray()

    def feed(self, data: bytes) -> List[Tuple[int, bytes]]:
        self._buffer += data
        frames = []
        while len(self._buffer) >= _FRAME_HEADER.size:
            stream_type, length = _FRAME_HEADER.unpack_from(self._buffer)
            end = _FRAME_HEADER.size + length
            if len(self._buffer) < end:
                break
            frames.append((stream_type, bytes(self._buffer[_FRAME_HEADER.size:end])))
            del self._buffer[:end]
        return frames

    @property
    def pending(self) -> int:
        return len(self._buffer)


class PidMarkerFilter:
    """Strips the ``PID:<n>`` line the exec wrapper prints before the command.

    Output is held back until the first newline. If that first line is the
    marker it is dropped and the number recorded in ``pid``; otherwise the
    line passes through untouched. Everything after the first line passes
    straight through.
    """

    def __init__(self, limit: int = 64):
        self.pid: Optional[int] = None
        self._limit = limit
        self._pending = b""
        self._done = False

    def feed(self, data: bytes) -> bytes:
        if self._done:
            return data
        self._pending += data
        newline = self._pending.find(b"\n")
        if newline == -1:
            if len(self._pending) <= self._limit:
                return b""
            # Too long to be a marker
            return self.flush()

        first, rest = self._pending[:newline], self._pending[newline + 1:]
        self._pending = b""
        self._done = True
        match = _PID_MARKER_RE.match(first)
        if match:
            self.pid = int(match.group(1))
            return rest
        return first + b"\n" + rest

    def flush(self) -> bytes:
        out, self._pending = self._pending, b""
        self._done = True
        return out


def _needs_thread_io(sock) -> bool:
    """True for attach sockets the event loop cannot poll directly.

    TLS daemons hand back an ``ssl.SSLSocket`` and SSH daemons a paramiko
    channel; ``loop.sock_recv`` only accepts plain non-blocking sockets.
    """
    return isinstance(sock, ssl.SSLSocket) or not isinstance(sock, socket.socket)


@dataclass
class _ExecHandle:
    """Side-table entry for a live exec session."""
    exec_id: str
    sock: Any
    task: Optional[asyncio.Task] = field(default=None, repr=False)
    threaded: bool = False

    async def recv(self, size: int) -> bytes:
        if self.threaded:
            return await asyncio.to_thread(self.sock.recv, size)
        return await asyncio.get_running_loop().sock_recv(self.sock, size)

    async def sendall(self, data: bytes) -> None:
        if self.threaded:
            await asyncio.to_thread(self.sock.sendall, data)
        else:
            await asyncio.get_running_loop().sock_sendall(self.sock, data)

    def close(self) -> None:
        if self.threaded:
            # Wakes a worker thread still blocked in recv()
            try:
                self.sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        try:
            self.sock.close()
        except OSError as e:
            logger.debug("Error closing exec socket %s: %s", self.exec_id, e)


class DockerExecutor(ProcessExecutor):
    """Run commands inside a Docker container through the Docker Engine API.

    Output of every exec is read from its raw attach socket. Signals cannot
    be forwarded through an exec session, so ``terminate`` drops the local
    stream and records ``128 + signal`` as the exit code; the command inside
    the container may keep running.
    """

    id_prefix = "docker"

    def __init__(self, config, client: Optional[docker.DockerClient] = None):
        super().__init__(config)
        self.client = client
        self.container = None
        self._streams: Dict[str, _ExecHandle] = {}

    # ----- Lifecycle -----

    async def _initialize(self) -> Result:
        docker_config = self.config.docker
        if docker_config is None:
            return err(ErrorCode.CONFIG_MISSING, "Docker configuration is missing")

        name = docker_config.container_name
        try:
            if self.client is None:
                self.client = await asyncio.to_thread(docker.from_env)

            container = await asyncio.to_thread(self._find_container, name)
            if container is not None:
                if container.status != "running":
                    logger.info("Starting stopped container %s", name)
                    await asyncio.to_thread(container.start)
                logger.info("Using existing container: %s", name)
            elif docker_config.use_existing:
                return err(
                    ErrorCode.CONTAINER_NOT_FOUND,
                    f"DOCKER_USE_EXISTING=true but container '{name}' not found. "
                    "Create it first or set DOCKER_USE_EXISTING=false to auto-create.",
                )
            else:
                container = await asyncio.to_thread(self._create_container, docker_config)
                logger.info("Created container %s from %s", name, docker_config.image)
            self.container = container
            return ok()
        except Exception as e:
            logger.error("Docker executor initialization error: %s", e)
            return err(ErrorCode.INITIALIZATION_FAILED,
                       f"Failed to initialize Docker executor: {e}", e)

    def _find_container(self, name: str):
        # The name filter matches substrings, so check for the exact name.
        for container in self.client.containers.list(all=True, filters={"name": name}):
            if container.name == name:
                return container
        return None

    def _create_container(self, docker_config):
        try:
            self.client.volumes.create(name=docker_config.volume_name)
        except APIError as e:
            logger.debug("Volume %s not created (may already exist): %s",
                         docker_config.volume_name, e)

        workdir = self.config.defaults.workdir
        return self.client.containers.run(
            docker_config.image,
            command=_KEEPALIVE_COMMAND,
            name=docker_config.container_name,
            detach=True,
            tty=True,
            user="root",
            working_dir=workdir,
            volumes={docker_config.volume_name: {"bind": workdir, "mode": "rw"}},
            mem_limit=_MEM_LIMIT,
            nano_cpus=_NANO_CPUS,
            pids_limit=_PIDS_LIMIT,
            privileged=False,
            tmpfs=_TMPFS,
        )

    def _ready(self) -> Result:
        if self.container is None:
            return err(ErrorCode.CONTAINER_NOT_FOUND, "Container not initialized")
        return ok()

    async def _close_transports(self) -> None:
        tasks = []
        for handle in list(self._streams.values()):
            if handle.task is not None and not handle.task.done():
                handle.task.cancel()
                tasks.append(handle.task)
            else:
                handle.close()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._streams.clear()

    async def _release(self) -> None:
        container, self.container = self.container, None
        if container is None:
            return
        try:
            await asyncio.to_thread(container.stop, timeout=5)
            await asyncio.to_thread(container.remove, force=True)
            logger.info("Removed container %s", container.name)
        except Exception as e:
            logger.warning("Failed to clean up container %s: %s", container.name, e)

    # ----- Spawn -----

    async def _start(self, session: ProcessSession, options: SpawnOptions) -> None:
        # The marker goes to stderr so it never mixes with the command's stdout.
        wrapped = f'cd {shlex.quote(session.cwd)} && echo "PID:$$" >&2 && {session.command}'
        api = self.client.api

        created = await asyncio.to_thread(
            api.exec_create,
            self.container.id,
            ["/bin/bash", "-c", wrapped],
            stdout=True,
            stderr=True,
            stdin=True,
            tty=session.tty,
            environment=session.env or None,
        )
        exec_id = created["Id"]
        attached = await asyncio.to_thread(api.exec_start, exec_id, tty=session.tty, socket=True)

        sock = getattr(attached, "_sock", attached)
        threaded = _needs_thread_io(sock)
        if not threaded:
            sock.setblocking(False)
        handle = _ExecHandle(exec_id=exec_id, sock=sock, threaded=threaded)
        self._streams[session.id] = handle
        handle.task = asyncio.create_task(self._supervise_exec(session, handle))

    async def _supervise_exec(self, session: ProcessSession, handle: _ExecHandle) -> None:
        marker = PidMarkerFilter()
        demuxer = None if session.tty else ExecStreamDemuxer()
        stdout_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        stderr_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        def emit_stdout(data: bytes) -> None:
            if data:
                session.append_stdout(stdout_decoder.decode(data), raw=data)

        def emit_stderr(data: bytes) -> None:
            if data:
                session.append_stderr(stderr_decoder.decode(data))

        # With a TTY the marker arrives on the merged terminal stream.
        emit_marked = emit_stdout if session.tty else emit_stderr

        def record_pid() -> None:
            if marker.pid is not None and session.os_pid is None:
                session.os_pid = marker.pid

        exit_code: Optional[int] = None
        try:
            while True:
                chunk = await handle.recv(65536)
                if not chunk:
                    break
                if demuxer is None:
                    emit_marked(marker.feed(chunk))
                    record_pid()
                    continue
                for stream_type, payload in demuxer.feed(chunk):
                    if stream_type == STDOUT:
                        emit_stdout(payload)
                    elif stream_type == STDERR:
                        emit_marked(marker.feed(payload))
                        record_pid()

            emit_marked(marker.flush())
            exit_code = await self._inspect_exit_code(handle.exec_id)
        except asyncio.CancelledError:
            raise
        except OSError as e:
            logger.debug("Exec stream for %s failed: %s", session.id, e)
            session.append_stderr(f"\nStream error: {e}")
            exit_code = 1
        finally:
            handle.close()
            if self._streams.get(session.id) is handle:
                del self._streams[session.id]
            session.mark_terminated(exit_code)

    async def _inspect_exit_code(self, exec_id: str) -> Optional[int]:
        try:
            info = await asyncio.to_thread(self.client.api.exec_inspect, exec_id)
        except Exception as e:
            logger.debug("exec_inspect failed for %s: %s", exec_id, e)
            return 1
        return info.get("ExitCode")

    # ----- Interaction -----

    async def _write_input(self, session: ProcessSession, data: bytes) -> None:
        handle = self._streams.get(session.id)
        if handle is None:
            raise RuntimeError(f"No exec stream attached to process {session.id}")
        await handle.sendall(data)

    async def _signal(self, session: ProcessSession, sig: signal.Signals) -> Result:
        handle = self._streams.pop(session.id, None)
        if handle is None:
            return err(ErrorCode.STREAM_NOT_FOUND, "Exec stream not found")
        session.mark_terminated(128 + sig.value)
        # The reader closes the socket once its cancellation lands.
        if handle.task is not None and not handle.task.done():
            handle.task.cancel()
        else:
            handle.close()
        logger.info("Closed exec stream of %s (%s)", session.id, sig.name)
        return ok()
