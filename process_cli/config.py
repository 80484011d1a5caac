"""
Configuration management for process-mcp.

Config files live in ~/.process-mcp/ (override with PROCESS_MCP_HOME):
- ~/.process-mcp/config.yaml  - Mode, defaults, sandbox and docker settings
- ~/.process-mcp/.env         - Environment overrides

Priority (highest to lowest):
1. Environment variables
2. config.yaml
3. Defaults
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from process_constants import DEFAULT_TIMEOUT_MS, DEFAULT_WORKDIR, MAX_TIMEOUT_MS

logger = logging.getLogger(__name__)

EXECUTION_MODES = ("host", "docker")


# =============================================================================
# Config paths
# =============================================================================

def get_process_mcp_home() -> Path:
    """Get the process-mcp home directory (~/.process-mcp)."""
    return Path(os.getenv("PROCESS_MCP_HOME", Path.home() / ".process-mcp"))


def get_config_path() -> Path:
    return get_process_mcp_home() / "config.yaml"


def get_env_path() -> Path:
    return get_process_mcp_home() / ".env"


def get_project_root() -> Path:
    return Path(__file__).parent.parent.resolve()


# =============================================================================
# Config sections
# =============================================================================

def _parse_list(value: Optional[str]) -> List[str]:
    """Split a comma-separated env value, dropping blanks."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("true", "1", "yes")


@dataclass
class NetworkConfig:
    allowed_domains: List[str] = field(default_factory=lambda: ["*"])
    denied_domains: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed_domains": list(self.allowed_domains),
            "denied_domains": list(self.denied_domains),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NetworkConfig":
        return cls(
            allowed_domains=list(data.get("allowed_domains", ["*"])),
            denied_domains=list(data.get("denied_domains", [])),
        )


@dataclass
class FilesystemConfig:
    allow_write: List[str] = field(default_factory=list)
    deny_read: List[str] = field(default_factory=list)
    deny_write: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allow_write": list(self.allow_write),
            "deny_read": list(self.deny_read),
            "deny_write": list(self.deny_write),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FilesystemConfig":
        return cls(
            allow_write=list(data.get("allow_write", [])),
            deny_read=list(data.get("deny_read", [])),
            deny_write=list(data.get("deny_write", [])),
        )


@dataclass
class SandboxConfig:
    """Host-mode sandbox settings, handed to the sandbox unmodified."""
    network: NetworkConfig = field(default_factory=NetworkConfig)
    filesystem: FilesystemConfig = field(default_factory=FilesystemConfig)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "network": self.network.to_dict(),
            "filesystem": self.filesystem.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SandboxConfig":
        return cls(
            network=NetworkConfig.from_dict(data.get("network") or {}),
            filesystem=FilesystemConfig.from_dict(data.get("filesystem") or {}),
        )


@dataclass
class DockerConfig:
    """Container-mode settings."""
    image: str = "ubuntu:22.04"
    volume_name: str = "process-mcp-volume"
    container_name: str = "process-mcp-main"
    use_existing: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "image": self.image,
            "volume_name": self.volume_name,
            "container_name": self.container_name,
            "use_existing": self.use_existing,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DockerConfig":
        return cls(
            image=data.get("image", "ubuntu:22.04"),
            volume_name=data.get("volume_name", "process-mcp-volume"),
            container_name=data.get("container_name", "process-mcp-main"),
            use_existing=bool(data.get("use_existing", False)),
        )


@dataclass
class DefaultsConfig:
    workdir: str = DEFAULT_WORKDIR
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_timeout_ms: int = MAX_TIMEOUT_MS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workdir": self.workdir,
            "timeout_ms": self.timeout_ms,
            "max_timeout_ms": self.max_timeout_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DefaultsConfig":
        return cls(
            workdir=data.get("workdir", DEFAULT_WORKDIR),
            timeout_ms=data.get("timeout_ms", DEFAULT_TIMEOUT_MS),
            max_timeout_ms=data.get("max_timeout_ms", MAX_TIMEOUT_MS),
        )


@dataclass
class ProcessMcpConfig:
    """
    Executor configuration.

    ``sandbox`` is only consulted in host mode and ``docker`` only in docker
    mode; either may be None.
    """
    mode: str = "host"
    sandbox: Optional[SandboxConfig] = None
    docker: Optional[DockerConfig] = None
    defaults: DefaultsConfig = field(default_factory=DefaultsConfig)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "sandbox": self.sandbox.to_dict() if self.sandbox else None,
            "docker": self.docker.to_dict() if self.docker else None,
            "defaults": self.defaults.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessMcpConfig":
        sandbox = data.get("sandbox")
        docker = data.get("docker")
        return cls(
            mode=data.get("mode", "host"),
            sandbox=SandboxConfig.from_dict(sandbox) if isinstance(sandbox, dict) else None,
            docker=DockerConfig.from_dict(docker) if isinstance(docker, dict) else None,
            defaults=DefaultsConfig.from_dict(data.get("defaults") or {}),
        )


# =============================================================================
# Loading
# =============================================================================

def load_env_files() -> None:
    """Load .env from the project root and ~/.process-mcp without overriding the real env."""
    for env_path in (get_project_root() / ".env", get_env_path()):
        if env_path.exists():
            load_dotenv(dotenv_path=env_path, override=False)


def _read_yaml(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        return {}
    try:
        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Failed to load %s: %s", config_path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: top level is not a mapping", config_path)
        return {}
    return data


def load_config(config_path: Optional[Path] = None) -> ProcessMcpConfig:
    """
    Build the executor configuration from config.yaml and the environment.

    Raises:
        ValueError: PROCESS_MODE (or ``mode`` in config.yaml) is not host/docker.
    """
    load_env_files()
    config = ProcessMcpConfig.from_dict(_read_yaml(config_path or get_config_path()))
    _apply_env_overrides(config)

    if config.mode not in EXECUTION_MODES:
        raise ValueError(
            f"Invalid execution mode '{config.mode}'. Expected one of: {', '.join(EXECUTION_MODES)}"
        )

    if config.mode == "host":
        if _parse_bool(os.getenv("SANDBOX_ENABLED"), default=True):
            config.sandbox = _host_sandbox(config.sandbox)
        else:
            config.sandbox = None
        config.docker = None
    else:
        config.docker = _docker_section(config.docker)
        config.sandbox = None

    _validate_defaults(config.defaults)
    return config


def _apply_env_overrides(config: ProcessMcpConfig) -> None:
    mode = os.getenv("PROCESS_MODE")
    if mode:
        config.mode = mode.strip().lower()

    workdir = os.getenv("DEFAULT_WORKDIR")
    if workdir:
        config.defaults.workdir = workdir


def _host_sandbox(base: Optional[SandboxConfig]) -> SandboxConfig:
    sandbox = base or SandboxConfig()

    allowed = os.getenv("SANDBOX_ALLOWED_DOMAINS")
    if allowed is not None:
        sandbox.network.allowed_domains = _parse_list(allowed) or ["*"]

    allow_write = ["/tmp", DEFAULT_WORKDIR, os.getcwd()]
    allow_write += sandbox.filesystem.allow_write
    allow_write += _parse_list(os.getenv("SANDBOX_ALLOW_WRITE"))
    sandbox.filesystem.allow_write = list(dict.fromkeys(allow_write))

    deny_read = _parse_list(os.getenv("SANDBOX_DENY_READ"))
    if deny_read:
        sandbox.filesystem.deny_read = deny_read
    deny_write = _parse_list(os.getenv("SANDBOX_DENY_WRITE"))
    if deny_write:
        sandbox.filesystem.deny_write = deny_write
    return sandbox


def _docker_section(base: Optional[DockerConfig]) -> DockerConfig:
    docker = base or DockerConfig()
    docker.image = os.getenv("DOCKER_IMAGE", docker.image)
    docker.volume_name = os.getenv("DOCKER_VOLUME", docker.volume_name)
    docker.container_name = os.getenv("DOCKER_CONTAINER", docker.container_name)
    docker.use_existing = _parse_bool(os.getenv("DOCKER_USE_EXISTING"), default=docker.use_existing)
    return docker


def _validate_defaults(defaults: DefaultsConfig) -> None:
    if not isinstance(defaults.max_timeout_ms, int) or not 0 < defaults.max_timeout_ms <= MAX_TIMEOUT_MS:
        logger.warning(
            "Invalid max_timeout_ms=%s (must be 1-%d). Using default %d.",
            defaults.max_timeout_ms, MAX_TIMEOUT_MS, MAX_TIMEOUT_MS,
        )
        defaults.max_timeout_ms = MAX_TIMEOUT_MS

    if not isinstance(defaults.timeout_ms, int) or defaults.timeout_ms <= 0:
        logger.warning(
            "Invalid timeout_ms=%s (must be positive). Using default %d.",
            defaults.timeout_ms, DEFAULT_TIMEOUT_MS,
        )
        defaults.timeout_ms = DEFAULT_TIMEOUT_MS
