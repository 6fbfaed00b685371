"""The VM contract shared by every backend."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum


class Status(IntEnum):
    """Lifecycle state of a VM."""

    NOT_FOUND = 0
    STOPPED = 1
    RUNNING = 2

    def __str__(self) -> str:
        return {Status.RUNNING: "Running", Status.STOPPED: "Stopped"}.get(self, "NotFound")


@dataclass(frozen=True)
class Mount:
    """A host directory shared with the VM."""

    host_path: str
    writable: bool = False


@dataclass(frozen=True)
class PortMapping:
    """A host-to-VM port binding; host_port 0 lets the backend choose."""

    host_port: int
    container_port: int


@dataclass
class StartOptions:
    """Resources and sharing options used when a VM is created."""

    cpus: int = 0
    memory_bytes: int = 0
    disk_bytes: int = 0
    vm_type: str = ""
    mounts: list[Mount] = field(default_factory=list)
    ssh_agent: bool = False
    port_mappings: list[PortMapping] = field(default_factory=list)


@dataclass(frozen=True)
class Snapshot:
    """A saved VM state."""

    name: str
    created_at: datetime | None = None


class VM(ABC):
    """A machine that scripts and agents run in, identified by ``profile``."""

    profile: str

    @abstractmethod
    def needs_port_binding_at_boot(self) -> bool:
        """Whether ports must be declared at creation rather than tunnelled later."""

    @abstractmethod
    def status(self) -> Status:
        """Return the current lifecycle state."""

    @abstractmethod
    def start(self, opts: StartOptions) -> None:
        """Create or resume the VM."""

    @abstractmethod
    def stop(self) -> None:
        """Stop the VM, keeping its disk."""

    @abstractmethod
    def destroy(self) -> None:
        """Delete the VM."""

    @abstractmethod
    def run(self, script: str, env: Mapping[str, str] | None) -> None:
        """Run script in the VM, raising on failure."""

    @abstractmethod
    def run_output(self, script: str, env: Mapping[str, str] | None) -> str:
        """Run script in the VM and return its combined output."""

    @abstractmethod
    def run_interactive(self, script: str, env: Mapping[str, str] | None) -> None:
        """Run script in the VM attached to the terminal."""

    @abstractmethod
    def ssh(self) -> None:
        """Open an interactive shell in the VM."""

    @abstractmethod
    def wait_ready(self, timeout: float) -> None:
        """Block until the VM answers commands, raising after timeout seconds."""

    @abstractmethod
    def create_snapshot(self, name: str) -> None:
        """Save the VM state under name."""

    @abstractmethod
    def restore_snapshot(self, name: str) -> bool:
        """Restore a snapshot; return False when it does not exist."""

    @abstractmethod
    def list_snapshots(self) -> list[Snapshot]:
        """Return the snapshots saved for this VM."""