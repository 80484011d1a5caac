"""Execution backends: the host machine or a Docker container."""

from tools.environments.base import ProcessExecutor
from tools.environments.docker import DockerExecutor
from tools.environments.local import HostExecutor

__all__ = ["ProcessExecutor", "HostExecutor", "DockerExecutor"]
