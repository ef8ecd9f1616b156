"""Data models for vm-template-builder."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from vmtemplate.constants import (
    DEFAULT_COMPACT_COMMANDS,
    DEFAULT_TIMEOUT_SECONDS,
    DEFAULT_TOOL_COMMANDS,
    LIBVIRT_URI,
    PATCH_CONTENT_SHARE,
    POLL_INTERVAL_SECONDS,
    READINESS_ATTEMPTS,
    VM_CPUS,
    VM_GENERATION,
    VM_MEMORY_MB,
    WINRM_PORT,
)


@dataclass(frozen=True)
class Credential:
    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class ProvisioningRequest:
    image: Path
    edition: str
    config_dir: Path
    machine_name: str
    credential: Credential
    disk_path: Path
    template_path: Path
    host: str
    work_dir: Path
    log_dir: Path
    mac_address: Optional[str] = None
    patch_server: Optional[str] = None
    patch_target_group: Optional[str] = None
    extra_disk_sizes: Tuple[str, ...] = ()


@dataclass
class BuildSettings:
    """Explicit run policy threaded through every component."""

    verbose: bool = False
    strict: bool = True
    poll_interval: float = POLL_INTERVAL_SECONDS
    wait_timeout: float = DEFAULT_TIMEOUT_SECONDS
    shutdown_timeout: float = DEFAULT_TIMEOUT_SECONDS
    readiness_attempts: int = READINESS_ATTEMPTS
    memory_mb: int = VM_MEMORY_MB
    cpus: int = VM_CPUS
    libvirt_uri: str = LIBVIRT_URI
    winrm_port: int = WINRM_PORT
    patch_content_share: str = PATCH_CONTENT_SHARE
    tool_commands: Dict[str, List[str]] = None  # type: ignore[assignment]
    compact_commands: List[List[str]] = None  # type: ignore[assignment]
    # directory on the builder -> the same directory as the hypervisor host sees it
    shares: Dict[str, str] = None  # type: ignore[assignment]

    def __post_init__(self):
        if self.tool_commands is None:
            self.tool_commands = {name: list(cmd) for name, cmd in DEFAULT_TOOL_COMMANDS.items()}
        if self.compact_commands is None:
            self.compact_commands = [list(cmd) for cmd in DEFAULT_COMPACT_COMMANDS]
        if self.shares is None:
            self.shares = {}


class VirtualMachineHandle(NamedTuple):
    name: str
    host: str


@dataclass
class VmSpec:
    name: str
    disk_path: Path
    switch: str
    memory_mb: int = VM_MEMORY_MB
    cpus: int = VM_CPUS
    generation: int = VM_GENERATION


@dataclass
class ConnectionInfo:
    machine_name: str
    address: str
    session: Any


@dataclass(frozen=True)
class PollResult:
    """Typed outcome of a single poll step."""

    state: str  # "ready", "not_ready", "failed"
    value: Any = None
    reason: str = ""

    @classmethod
    def ready(cls, value: Any = None) -> "PollResult":
        return cls("ready", value=value)

    @classmethod
    def not_ready(cls, reason: str = "") -> "PollResult":
        return cls("not_ready", reason=reason)

    @classmethod
    def failed(cls, reason: str) -> "PollResult":
        return cls("failed", reason=reason)

    @property
    def is_ready(self) -> bool:
        return self.state == "ready"

    @property
    def is_failed(self) -> bool:
        return self.state == "failed"


@dataclass(frozen=True)
class WaitOutcome:
    success: bool
    polls: int
    elapsed: float
    value: Any = None
    last_reason: str = ""

    def __bool__(self) -> bool:
        return self.success
