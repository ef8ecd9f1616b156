"""In-memory stand-ins for the hypervisor, remote transport, external tools and clock."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from vmtemplate.exceptions import TemplateBuildError, TransientError
from vmtemplate.hypervisor import Hypervisor
from vmtemplate.models import VirtualMachineHandle, VmSpec
from vmtemplate.remote import CommandResult


def _next(script: list, default: Callable[[], object]):
    """Pop the next scripted response; exceptions in the script are raised."""
    if not script:
        return default()
    item = script.pop(0)
    if isinstance(item, BaseException):
        raise item
    return item


class FakeClock:
    """Monotonic clock that only moves when ``sleep`` is called."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@dataclass
class FakeVm:
    spec: VmSpec
    running: bool = False
    mac: Optional[str] = None
    disks: Dict[str, Path] = field(default_factory=dict)


class FakeHypervisor(Hypervisor):
    def __init__(self, root: Path, host: str = "hv01", switches=("external",)) -> None:
        self.host = host
        self.root = root
        self.switches = list(switches)
        self.vms: Dict[str, FakeVm] = {}
        self.addresses = ["192.0.2.10"]
        # scripted responses, consumed one per call before falling back to VM state
        self.heartbeats: list = []
        self.address_script: list = []
        self.status_script: list = []
        self.mounted: Dict[Path, Path] = {}
        self.mount_error: Optional[Exception] = None
        self.events: List[tuple] = []
        self.created_disks: List[tuple] = []
        self.defined_specs: List[VmSpec] = []

    def add_vm(self, name: str, disk_path: Path, running: bool = False) -> FakeVm:
        vm = FakeVm(VmSpec(name=name, disk_path=disk_path, switch=self.switches[0]), running=running)
        self.vms[name] = vm
        return vm

    def power_off(self, name: str) -> None:
        self.vms[name].running = False

    def volume_root(self, disk_path: Path) -> Path:
        """Directory that stands in for the disk's mounted volume; stable across mounts."""
        path = self.root / "volumes" / disk_path.name
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _vm(self, name: str) -> FakeVm:
        if name not in self.vms:
            raise TemplateBuildError(f"VM {name} not found")
        return self.vms[name]

    def _query(self, name: str) -> FakeVm:
        if name not in self.vms:
            raise TransientError(f"VM {name} not visible")
        return self.vms[name]

    def vm_exists(self, name: str) -> bool:
        return name in self.vms

    def create_vm(self, spec: VmSpec) -> VirtualMachineHandle:
        if spec.name in self.vms:
            raise TemplateBuildError(f"VM {spec.name} already exists")
        self.vms[spec.name] = FakeVm(spec)
        self.defined_specs.append(spec)
        self.events.append(("create_vm", spec.name))
        return VirtualMachineHandle(spec.name, self.host)

    def set_mac_address(self, handle: VirtualMachineHandle, mac: str) -> None:
        self._vm(handle.name).mac = mac

    def create_disk(self, path: Path, size: str) -> None:
        self.created_disks.append((path, size))

    def attach_disk(self, handle: VirtualMachineHandle, path: Path, target: str) -> None:
        self._vm(handle.name).disks[target] = path

    def start_vm(self, handle: VirtualMachineHandle) -> None:
        self._vm(handle.name).running = True
        self.events.append(("start", handle.name))

    def stop_vm(self, handle: VirtualMachineHandle, force: bool = False) -> None:
        self._vm(handle.name).running = False
        self.events.append(("stop", handle.name, force))

    def remove_vm(self, handle: VirtualMachineHandle) -> None:
        vm = self._vm(handle.name)
        if vm.running:
            raise TemplateBuildError(f"VM {handle.name} is still running")
        del self.vms[handle.name]
        self.events.append(("remove", handle.name))

    def heartbeat_status(self, handle: VirtualMachineHandle) -> Optional[str]:
        vm = self._query(handle.name)
        return _next(self.heartbeats, lambda: "OK" if vm.running else None)

    def ip_addresses(self, handle: VirtualMachineHandle) -> List[str]:
        vm = self._query(handle.name)
        return _next(self.address_script, lambda: list(self.addresses) if vm.running else [])

    def integration_statuses(self, handle: VirtualMachineHandle) -> List[Optional[str]]:
        vm = self._query(handle.name)
        return _next(self.status_script, lambda: ["Running", "OK"] if vm.running else [None, None])

    def first_switch(self) -> str:
        if not self.switches:
            raise TemplateBuildError("No virtual switch")
        return self.switches[0]

    def mount_disk(self, path: Path) -> Path:
        if path in self.mounted:
            raise TemplateBuildError(f"{path} already mounted")
        if self.mount_error is not None:
            raise self.mount_error
        mount_point = self.volume_root(path)
        self.mounted[path] = mount_point
        self.events.append(("mount", path))
        return mount_point

    def dismount_disk(self, path: Path) -> None:
        if path not in self.mounted:
            raise TemplateBuildError(f"{path} is not mounted")
        del self.mounted[path]
        self.events.append(("dismount", path))

    def event_names(self) -> List[str]:
        return [event[0] for event in self.events]


class FakeSession:
    def __init__(self, address: str, on_run: Optional[Callable[[str], None]] = None) -> None:
        self.address = address
        self.on_run = on_run
        self.scripts: List[str] = []
        self.results: list = []
        self.closed = False

    def run_powershell(self, script: str) -> CommandResult:
        if self.closed:
            raise TransientError("session closed")
        self.scripts.append(script)
        if self.on_run is not None:
            self.on_run(script)
        return _next(self.results, lambda: CommandResult(0, "", ""))

    def close(self) -> None:
        self.closed = True


class FakeTransport:
    def __init__(self) -> None:
        self.reachable_script: list = []
        self.open_errors: list = []
        self.sessions: List[FakeSession] = []
        self.probed: List[str] = []
        self.on_run: Optional[Callable[[str], None]] = None

    def is_reachable(self, address: str) -> bool:
        self.probed.append(address)
        return _next(self.reachable_script, lambda: True)

    def open_session(self, address: str, credential) -> FakeSession:
        if self.open_errors:
            raise self.open_errors.pop(0)
        session = FakeSession(address, self.on_run)
        self.sessions.append(session)
        return session


class FakeTools:
    def __init__(self, compact_available: bool = True) -> None:
        self.compact_available = compact_available
        self.calls: List[tuple] = []
        self.failures: Dict[str, Exception] = {}

    def _record(self, name: str, *args) -> None:
        self.calls.append((name,) + args)
        if name in self.failures:
            raise self.failures[name]

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]

    def convert_image(self, image: Path, edition: str, disk: Path, unattend: Path) -> None:
        self._record("convert", image, edition, disk, unattend)
        disk.parent.mkdir(parents=True, exist_ok=True)
        disk.write_bytes(b"fake disk contents")

    def apply_offline_patches(self, disk: Path, mount_dir: Path, server: str, target_group: str, content_share: str) -> None:
        (disk.parent / "offline-patch.log").write_text("servicing started\n")
        self._record("patch", disk, mount_dir, server, target_group, content_share)

    def cleanup_component_store(self, mount: Path) -> None:
        self._record("component_cleanup", mount)

    def compact_disk(self, disk: Path) -> bool:
        self._record("compact", disk)
        return self.compact_available

    def describe(self) -> Dict[str, str]:
        return {}
