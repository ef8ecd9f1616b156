"""VM lifecycle: create, start, stop and delete the build machine."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional

from vmtemplate.constants import DISK_TARGET_PREFIX, VM_GENERATION
from vmtemplate.hypervisor import Hypervisor
from vmtemplate.models import BuildSettings, VirtualMachineHandle, VmSpec
from vmtemplate.utils import drive_identifier, log, normalize_mac, translate_path, validate_disk_size


class VmLifecycleController:
    def __init__(self, hypervisor: Hypervisor, settings: BuildSettings) -> None:
        self.hypervisor = hypervisor
        self.settings = settings

    def create_and_start(
        self,
        name: str,
        disk_path: Path,
        mac_address: Optional[str] = None,
        extra_disk_sizes: Iterable[str] = (),
    ) -> VirtualMachineHandle:
        handle = VirtualMachineHandle(name, self.hypervisor.host)
        if self.hypervisor.vm_exists(name):
            log("WARN", f"VM {name} already exists on {handle.host}; removing it first")
            self.hypervisor.stop_vm(handle, force=True)
            self.hypervisor.remove_vm(handle)

        host_disk = self.resolve_disk_path(disk_path)
        switch = self.hypervisor.first_switch()
        spec = VmSpec(
            name=name,
            disk_path=host_disk,
            switch=switch,
            memory_mb=self.settings.memory_mb,
            cpus=self.settings.cpus,
            generation=VM_GENERATION,
        )
        log("INFO", f"Creating VM {name} on {handle.host} | Memory: {spec.memory_mb} MiB | CPUs: {spec.cpus} | Switch: {switch}")
        handle = self.hypervisor.create_vm(spec)

        if mac_address:
            mac = normalize_mac(mac_address)
            log("INFO", f"Assigning fixed MAC address {mac}")
            self.hypervisor.set_mac_address(handle, mac)

        self._attach_extra_disks(handle, host_disk, extra_disk_sizes)

        self.hypervisor.start_vm(handle)
        log("SUCCESS", f"VM {name} started")
        return handle

    def resolve_disk_path(self, disk_path: Path) -> Path:
        """Translate the builder's path to the disk into the path the hypervisor host uses."""
        resolved = translate_path(disk_path, self.settings.shares)
        if resolved != disk_path:
            log("DEBUG", f"Resolved {disk_path} to host path {resolved}", verbose=self.settings.verbose)
        return resolved

    def _attach_extra_disks(self, handle: VirtualMachineHandle, boot_disk: Path, sizes: Iterable[str]) -> List[Path]:
        attached = []
        for index, size in enumerate(sizes, start=1):
            validate_disk_size(size)
            target = drive_identifier(index, DISK_TARGET_PREFIX)
            path = boot_disk.with_name(f"{handle.name}-{target}{boot_disk.suffix}")
            log("INFO", f"Creating extra disk {path} ({size}) as {target}")
            self.hypervisor.create_disk(path, size)
            self.hypervisor.attach_disk(handle, path, target)
            attached.append(path)
        return attached

    def stop(self, handle: VirtualMachineHandle, force: bool = False) -> None:
        log("INFO", f"Stopping VM {handle.name}{' (forced)' if force else ''}")
        self.hypervisor.stop_vm(handle, force=force)

    def delete(self, handle: VirtualMachineHandle) -> None:
        log("INFO", f"Deleting VM {handle.name} from {handle.host}")
        self.hypervisor.remove_vm(handle)
