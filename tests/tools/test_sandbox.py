"""
Tests for the bubblewrap sandbox wrapper (tools/sandbox.py) and how the
host executor falls back when it is unavailable.
"""

import shlex
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from process_cli.config import (
    DefaultsConfig,
    FilesystemConfig,
    NetworkConfig,
    ProcessMcpConfig,
    SandboxConfig,
)
from tools.environments.local import HostExecutor
from tools.process_registry import SpawnOptions
from tools.sandbox import BubblewrapSandbox, SandboxUnavailableError


def _ready_sandbox(config):
    sandbox = BubblewrapSandbox(config, shell="/bin/sh")
    with patch("tools.sandbox.shutil.which", return_value="/usr/bin/bwrap"), \
         patch("tools.sandbox.subprocess.run", return_value=MagicMock(returncode=0)):
        sandbox.initialize()
    return sandbox


class TestInitialize:
    def test_missing_bwrap(self):
        sandbox = BubblewrapSandbox(SandboxConfig())
        with patch("tools.sandbox.shutil.which", return_value=None):
            with pytest.raises(SandboxUnavailableError):
                sandbox.initialize()
        assert not sandbox.available

    def test_probe_failure(self):
        sandbox = BubblewrapSandbox(SandboxConfig())
        failed = MagicMock(returncode=1, stderr=b"No permissions to create new namespace")
        with patch("tools.sandbox.shutil.which", return_value="/usr/bin/bwrap"), \
             patch("tools.sandbox.subprocess.run", return_value=failed):
            with pytest.raises(SandboxUnavailableError, match="namespace"):
                sandbox.initialize()

    def test_probe_timeout(self):
        sandbox = BubblewrapSandbox(SandboxConfig())
        with patch("tools.sandbox.shutil.which", return_value="/usr/bin/bwrap"), \
             patch("tools.sandbox.subprocess.run",
                   side_effect=subprocess.TimeoutExpired("bwrap", 5)):
            with pytest.raises(SandboxUnavailableError):
                sandbox.initialize()

    def test_ready(self):
        assert _ready_sandbox(SandboxConfig()).available

    def test_reset(self):
        sandbox = _ready_sandbox(SandboxConfig())
        sandbox.reset()
        assert not sandbox.available


class TestWrapCommand:
    def test_requires_initialization(self):
        with pytest.raises(SandboxUnavailableError):
            BubblewrapSandbox(SandboxConfig()).wrap_command("ls", "/tmp")

    def test_command_runs_through_shell_inside_bwrap(self, tmp_path):
        sandbox = _ready_sandbox(SandboxConfig())
        argv = shlex.split(sandbox.wrap_command("echo 'a b'", str(tmp_path)))
        assert argv[0] == "/usr/bin/bwrap"
        assert argv[-3:] == ["/bin/sh", "-c", "echo 'a b'"]
        assert ["--chdir", str(tmp_path)] == argv[argv.index("--chdir"):argv.index("--chdir") + 2]

    def test_filesystem_rules(self, tmp_path):
        writable = tmp_path / "work"
        writable.mkdir()
        secret_dir = tmp_path / "secrets"
        secret_dir.mkdir()
        secret_file = tmp_path / "token"
        secret_file.write_text("x")

        config = SandboxConfig(filesystem=FilesystemConfig(
            allow_write=[str(writable), str(tmp_path / "does-not-exist")],
            deny_read=[str(secret_dir), str(secret_file)],
            deny_write=[str(writable / ".git")],
        ))
        command = _ready_sandbox(config).wrap_command("true", str(tmp_path))

        assert f"--bind {writable} {writable}" in command
        assert "does-not-exist" not in command
        assert f"--tmpfs {secret_dir}" in command
        assert f"--ro-bind /dev/null {secret_file}" in command
        assert "--ro-bind / /" in command

    def test_empty_allow_list_disables_network(self):
        config = SandboxConfig(network=NetworkConfig(allowed_domains=[]))
        assert "--unshare-net" in _ready_sandbox(config).wrap_command("true", "/")

    def test_wildcard_keeps_network(self):
        assert "--unshare-net" not in _ready_sandbox(SandboxConfig()).wrap_command("true", "/")

    def test_domain_list_warns_once(self, caplog):
        config = SandboxConfig(network=NetworkConfig(allowed_domains=["example.com"]))
        sandbox = _ready_sandbox(config)
        with caplog.at_level("WARNING", logger="tools.sandbox"):
            sandbox.wrap_command("true", "/")
            sandbox.wrap_command("true", "/")
        warnings = [r for r in caplog.records if "example.com" in r.getMessage()]
        assert len(warnings) == 1


class TestHostFallback:
    @pytest.mark.asyncio
    async def test_runs_unsandboxed_without_bwrap(self, tmp_path):
        config = ProcessMcpConfig(
            mode="host",
            sandbox=SandboxConfig(),
            defaults=DefaultsConfig(workdir=str(tmp_path)),
        )
        executor = HostExecutor(config, shell="/bin/sh")
        with patch("tools.sandbox.shutil.which", return_value=None):
            assert (await executor.initialize()).success
        try:
            assert executor.sandbox is not None
            assert not executor.sandbox.available
            result = await executor.spawn(SpawnOptions(command="echo unsandboxed"))
            assert result.value.stdout == "unsandboxed\n"
        finally:
            await executor.teardown()

    @pytest.mark.asyncio
    async def test_commands_are_wrapped_when_available(self, tmp_path):
        config = ProcessMcpConfig(mode="host", sandbox=SandboxConfig(),
                                  defaults=DefaultsConfig(workdir=str(tmp_path)))
        executor = HostExecutor(config, shell="/bin/sh")
        executor.sandbox = _ready_sandbox(config.sandbox)
        session = MagicMock(command="ls", cwd=str(tmp_path))
        assert executor._prepare_command(session).startswith("/usr/bin/bwrap ")
