"""
Bubblewrap sandbox for host-mode commands.

Wraps a shell command in ``bwrap`` so it sees a read-only view of the host
filesystem, with write access only to the configured allow-list and with
denied paths masked out. The sandbox is optional: if bubblewrap is missing
or cannot create namespaces (e.g. inside an unprivileged container), the
host executor logs a warning and runs commands unwrapped.
"""

import logging
import os
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)


class SandboxUnavailableError(RuntimeError):
    """bubblewrap is not installed or cannot run on this host."""


def _probe_bwrap(executable: str) -> None:
    """Run a minimal sandbox to make sure namespaces can actually be created."""
    try:
        probe = subprocess.run(
            [
                executable,
                "--unshare-user",
                "--unshare-pid",
                "--unshare-uts",
                "--unshare-ipc",
                "--die-with-parent",
                "--ro-bind", "/", "/",
                "--proc", "/proc",
                "--dev", "/dev",
                "--tmpfs", "/tmp",
                "/bin/sh", "-c", "true",
            ],
            capture_output=True,
            timeout=5,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        raise SandboxUnavailableError(f"bubblewrap probe failed: {e}") from e
    if probe.returncode != 0:
        stderr = probe.stderr.decode("utf-8", errors="replace").strip()
        raise SandboxUnavailableError(f"bubblewrap cannot create a sandbox: {stderr or probe.returncode}")


class BubblewrapSandbox:
    """
    Command wrapper driven by a ``SandboxConfig``.

    Filesystem:
      - ``/`` is bound read-only, ``/proc`` and ``/dev`` are fresh
      - every existing ``allow_write`` path is bound read-write
      - ``deny_write`` paths are re-bound read-only on top
      - ``deny_read`` directories are hidden behind an empty tmpfs, files
        behind ``/dev/null``

    Network: an empty ``allowed_domains`` list unshares the network
    namespace entirely. bubblewrap cannot filter by domain, so any other
    list leaves the network reachable.
    """

    def __init__(self, config, shell: str = "/bin/sh"):
        self.config = config
        self.shell = shell
        self._executable: Optional[str] = None
        self._warned_domains = False

    @property
    def available(self) -> bool:
        return self._executable is not None

    def initialize(self) -> None:
        """Locate and probe bwrap. Raises SandboxUnavailableError if unusable."""
        if self._executable:
            return
        executable = shutil.which("bwrap")
        if not executable:
            raise SandboxUnavailableError("bubblewrap (bwrap) is not installed")
        _probe_bwrap(executable)
        self._executable = executable
        logger.debug("bubblewrap sandbox ready: %s", executable)

    def wrap_command(self, command: str, cwd: str) -> str:
        """Return a shell command line that runs ``command`` inside the sandbox."""
        if not self._executable:
            raise SandboxUnavailableError("sandbox is not initialized")
        args = self._build_args(cwd)
        args.extend([self.shell, "-c", command])
        return shlex.join(args)

    def reset(self) -> None:
        self._executable = None
        self._warned_domains = False

    # ----- argv construction -----

    def _build_args(self, cwd: str) -> List[str]:
        fs = self.config.filesystem
        args = [
            self._executable,
            "--die-with-parent",
            "--unshare-ipc",
            "--unshare-uts",
            "--ro-bind", "/", "/",
            "--proc", "/proc",
            "--dev", "/dev",
        ]

        for path in self._existing(fs.allow_write):
            args.extend(["--bind", path, path])
        for path in self._existing(fs.deny_write):
            args.extend(["--ro-bind", path, path])
        for path in self._existing(fs.deny_read):
            if os.path.isdir(path):
                args.extend(["--tmpfs", path])
            else:
                args.extend(["--ro-bind", "/dev/null", path])

        args.extend(self._network_args())
        if cwd and os.path.isdir(cwd):
            args.extend(["--chdir", cwd])
        return args

    def _network_args(self) -> List[str]:
        network = self.config.network
        allowed = list(network.allowed_domains)
        if not allowed:
            return ["--unshare-net"]
        if "*" not in allowed and not self._warned_domains:
            logger.warning(
                "Sandbox cannot restrict network to specific domains (%s); network stays enabled",
                ", ".join(allowed),
            )
            self._warned_domains = True
        return []

    @staticmethod
    def _existing(paths) -> List[str]:
        resolved = []
        for path in paths or []:
            expanded = str(Path(path).expanduser())
            if os.path.exists(expanded):
                resolved.append(expanded)
            else:
                logger.debug("Sandbox path does not exist, skipping: %s", expanded)
        return resolved
