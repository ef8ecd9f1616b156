"""Hypervisor surface used by the provisioning components."""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from vmtemplate.models import VirtualMachineHandle, VmSpec


class Hypervisor(ABC):
    """Operations the pipeline needs from the host that runs the build VM.

    Query methods (existence, heartbeat, addresses, integration statuses) raise
    :class:`~vmtemplate.exceptions.TransientError` when the host cannot answer
    right now; every other failure is fatal.
    """

    host: str

    # VM enumeration and lifecycle
    @abstractmethod
    def vm_exists(self, name: str) -> bool: ...

    @abstractmethod
    def create_vm(self, spec: VmSpec) -> VirtualMachineHandle: ...

    @abstractmethod
    def set_mac_address(self, handle: VirtualMachineHandle, mac: str) -> None: ...

    @abstractmethod
    def create_disk(self, path: Path, size: str) -> None:
        """Create an empty disk file at ``path`` as the host sees it."""

    @abstractmethod
    def attach_disk(self, handle: VirtualMachineHandle, path: Path, target: str) -> None: ...

    @abstractmethod
    def start_vm(self, handle: VirtualMachineHandle) -> None: ...

    @abstractmethod
    def stop_vm(self, handle: VirtualMachineHandle, force: bool = False) -> None: ...

    @abstractmethod
    def remove_vm(self, handle: VirtualMachineHandle) -> None:
        """Delete the VM definition; its disk files stay in place."""

    # Guest integration
    @abstractmethod
    def heartbeat_status(self, handle: VirtualMachineHandle) -> Optional[str]:
        """Return "OK" when the guest is alive, another status string or None otherwise."""

    @abstractmethod
    def ip_addresses(self, handle: VirtualMachineHandle) -> List[str]: ...

    @abstractmethod
    def integration_statuses(self, handle: VirtualMachineHandle) -> List[Optional[str]]:
        """Status of every guest integration service; all empty or None once the guest is off."""

    # Host resources
    @abstractmethod
    def first_switch(self) -> str: ...

    @abstractmethod
    def mount_disk(self, path: Path) -> Path:
        """Mount a disk image reachable on this machine and return its mount point."""

    @abstractmethod
    def dismount_disk(self, path: Path) -> None: ...

    def close(self) -> None:
        pass
