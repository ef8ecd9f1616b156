"""Hypervisor implementation backed by libvirt and the libguestfs tools."""

from __future__ import annotations

import ipaddress
import json
from pathlib import Path
from typing import List, Optional
from xml.etree.ElementTree import Element, SubElement, fromstring, tostring

try:
    import libvirt  # type: ignore
    import libvirt_qemu  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from vmtemplate.constants import (
    BOOT_DISK_TARGET,
    DISK_BUS,
    GUEST_AGENT_CHANNEL,
    GUEST_AGENT_TIMEOUT,
    HEARTBEAT_OK,
    LOCAL_HOSTS,
    LOCAL_LIBVIRT_URI,
    NIC_MODEL,
)
from vmtemplate.disks import GuestMounter
from vmtemplate.exceptions import TemplateBuildError, TransientError
from vmtemplate.hypervisor import Hypervisor
from vmtemplate.models import BuildSettings, VirtualMachineHandle, VmSpec
from vmtemplate.utils import disk_format, log, validate_disk_size
from vmtemplate.waiter import PollingWaiter


def libvirt_uri_for(host: str, template: str) -> str:
    if host.strip().lower() in LOCAL_HOSTS:
        return LOCAL_LIBVIRT_URI
    return template.format(host=host)


def _error_message(exc: Exception) -> str:
    return exc.get_error_message() if hasattr(exc, "get_error_message") else str(exc)


def render_domain_xml(spec: VmSpec) -> str:
    """Generation-2 machine: q35 with UEFI firmware, SATA boot disk, one NIC, guest agent channel."""
    domain = Element("domain", type="kvm")
    SubElement(domain, "name").text = spec.name
    SubElement(domain, "memory", unit="MiB").text = str(spec.memory_mb)
    SubElement(domain, "vcpu", placement="static").text = str(spec.cpus)

    os_el = SubElement(domain, "os", firmware="efi" if spec.generation >= 2 else "bios")
    machine = "q35" if spec.generation >= 2 else "pc"
    SubElement(os_el, "type", arch="x86_64", machine=machine).text = "hvm"
    SubElement(os_el, "boot", dev="hd")

    features = SubElement(domain, "features")
    SubElement(features, "acpi")
    SubElement(features, "apic")
    hyperv = SubElement(features, "hyperv", mode="custom")
    SubElement(hyperv, "relaxed", state="on")
    SubElement(hyperv, "vapic", state="on")
    SubElement(hyperv, "spinlocks", state="on", retries="8191")

    SubElement(domain, "cpu", mode="host-passthrough")
    clock = SubElement(domain, "clock", offset="localtime")
    SubElement(clock, "timer", name="hypervclock", present="yes")
    SubElement(domain, "on_poweroff").text = "destroy"
    SubElement(domain, "on_reboot").text = "restart"

    devices = SubElement(domain, "devices")
    devices.append(disk_element(spec.disk_path, BOOT_DISK_TARGET))

    iface = SubElement(devices, "interface", type="network")
    SubElement(iface, "source", network=spec.switch)
    SubElement(iface, "model", type=NIC_MODEL)

    channel = SubElement(devices, "channel", type="unix")
    SubElement(channel, "target", type="virtio", name=GUEST_AGENT_CHANNEL)

    SubElement(devices, "graphics", type="vnc", autoport="yes")

    from xml.dom.minidom import parseString

    raw = tostring(domain, encoding="unicode")
    return parseString(raw).toprettyxml(indent="  ").split("\n", 1)[1].rstrip()


def disk_element(path: Path, target: str) -> Element:
    disk = Element("disk", type="file", device="disk")
    SubElement(disk, "driver", name="qemu", type=disk_format(path))
    SubElement(disk, "source", file=str(path))
    SubElement(disk, "target", dev=target, bus=DISK_BUS)
    return disk


def volume_xml(path: Path, size: str) -> str:
    """Storage volume definition for an empty disk; sizes use qemu-img's K/M/G/T suffixes."""
    size = validate_disk_size(size)
    unit = size[-1].upper() if size[-1].isalpha() else "bytes"
    amount = size[:-1] if unit != "bytes" else size
    volume = Element("volume", type="file")
    SubElement(volume, "name").text = path.name
    SubElement(volume, "capacity", unit=unit).text = amount
    SubElement(volume, "allocation", unit="bytes").text = "0"
    target = SubElement(volume, "target")
    SubElement(target, "format", type=disk_format(path))
    return tostring(volume, encoding="unicode")


def channel_statuses(domain_xml: str) -> List[Optional[str]]:
    """Map each virtio-serial channel's connection state to an integration status."""
    root = fromstring(domain_xml)
    statuses: List[Optional[str]] = []
    for target in root.findall("./devices/channel/target"):
        state = target.get("state")
        if state == "connected":
            statuses.append(HEARTBEAT_OK)
        elif state == "disconnected":
            statuses.append("No Contact")
        else:
            statuses.append(None)
    return statuses


def usable_addresses(interfaces: dict) -> List[str]:
    """Flatten libvirt interfaceAddresses() output, IPv4 first, dropping loopback and link-local."""
    ipv4: List[str] = []
    ipv6: List[str] = []
    for iface in interfaces.values():
        for entry in iface.get("addrs") or []:
            raw = entry.get("addr")
            if not raw:
                continue
            try:
                parsed = ipaddress.ip_address(raw)
            except ValueError:
                continue
            if parsed.is_loopback or parsed.is_link_local or parsed.is_unspecified:
                continue
            (ipv4 if parsed.version == 4 else ipv6).append(raw)
    return ipv4 + ipv6


class LibvirtHypervisor(Hypervisor):
    def __init__(self, host: str, settings: BuildSettings, mounter: Optional[GuestMounter] = None) -> None:
        self.host = host
        self.settings = settings
        self.uri = libvirt_uri_for(host, settings.libvirt_uri)
        self.conn: Optional[libvirt.virConnect] = None
        self.mounter = mounter or GuestMounter(verbose=settings.verbose, waiter=PollingWaiter(settings))

    def connect(self) -> None:
        try:
            self.conn = libvirt.open(self.uri)
        except libvirt.libvirtError as exc:
            raise TemplateBuildError(f"Failed to open libvirt connection to {self.uri}: {_error_message(exc)}") from exc
        if self.conn is None:
            raise TemplateBuildError(f"Failed to open libvirt connection to {self.uri}")
        log("DEBUG", f"Connected to {self.uri}", verbose=self.settings.verbose)

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def _connection(self) -> "libvirt.virConnect":
        if self.conn is None:
            raise TemplateBuildError("libvirt connection not established")
        return self.conn

    def _domain(self, name: str) -> "libvirt.virDomain":
        try:
            return self._connection().lookupByName(name)
        except libvirt.libvirtError as exc:
            raise TemplateBuildError(f"VM {name} not found on {self.host}: {_error_message(exc)}") from exc

    def _query_domain(self, name: str) -> "libvirt.virDomain":
        try:
            return self._connection().lookupByName(name)
        except libvirt.libvirtError as exc:
            raise TransientError(f"VM {name} not visible on {self.host}: {_error_message(exc)}") from exc

    def vm_exists(self, name: str) -> bool:
        try:
            self._connection().lookupByName(name)
            return True
        except libvirt.libvirtError as exc:
            if exc.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN:
                return False
            raise TransientError(f"Cannot look up VM {name} on {self.host}: {_error_message(exc)}") from exc

    def create_vm(self, spec: VmSpec) -> VirtualMachineHandle:
        xml = render_domain_xml(spec)
        try:
            domain = self._connection().defineXML(xml)
        except libvirt.libvirtError as exc:
            raise TemplateBuildError(f"Failed to define VM {spec.name}: {_error_message(exc)}") from exc
        if domain is None:
            raise TemplateBuildError(f"Failed to define VM {spec.name}")
        log("SUCCESS", f"Defined VM {spec.name} on {self.host}")
        return VirtualMachineHandle(spec.name, self.host)

    def set_mac_address(self, handle: VirtualMachineHandle, mac: str) -> None:
        domain = self._domain(handle.name)
        root = fromstring(domain.XMLDesc(0))
        iface = root.find("./devices/interface")
        if iface is None:
            raise TemplateBuildError(f"VM {handle.name} has no network adapter")
        mac_el = iface.find("mac")
        if mac_el is None:
            mac_el = SubElement(iface, "mac")
        mac_el.set("address", mac)
        try:
            self._connection().defineXML(tostring(root, encoding="unicode"))
        except libvirt.libvirtError as exc:
            raise TemplateBuildError(f"Failed to set MAC address on {handle.name}: {_error_message(exc)}") from exc

    def create_disk(self, path: Path, size: str) -> None:
        """Create an empty volume on the host, in the storage pool whose directory holds ``path``."""
        try:
            pool = self._connection().storagePoolLookupByTargetPath(str(path.parent))
        except libvirt.libvirtError as exc:
            raise TemplateBuildError(
                f"No storage pool on {self.host} covers {path.parent}; define a dir pool for it: {_error_message(exc)}"
            ) from exc
        try:
            pool.createXML(volume_xml(path, size), 0)
        except libvirt.libvirtError as exc:
            raise TemplateBuildError(f"Failed to create disk {path} on {self.host}: {_error_message(exc)}") from exc
        log("DEBUG", f"Created volume {path} ({size}) on {self.host}", verbose=self.settings.verbose)

    def attach_disk(self, handle: VirtualMachineHandle, path: Path, target: str) -> None:
        domain = self._domain(handle.name)
        xml = tostring(disk_element(path, target), encoding="unicode")
        try:
            domain.attachDeviceFlags(xml, libvirt.VIR_DOMAIN_AFFECT_CONFIG)
        except libvirt.libvirtError as exc:
            raise TemplateBuildError(f"Failed to attach {path} to {handle.name}: {_error_message(exc)}") from exc

    def start_vm(self, handle: VirtualMachineHandle) -> None:
        domain = self._domain(handle.name)
        if domain.isActive():
            log("INFO", f"VM {handle.name} already running")
            return
        try:
            domain.create()
        except libvirt.libvirtError as exc:
            raise TemplateBuildError(f"Failed to start VM {handle.name}: {_error_message(exc)}") from exc

    def stop_vm(self, handle: VirtualMachineHandle, force: bool = False) -> None:
        domain = self._domain(handle.name)
        if not domain.isActive():
            return
        try:
            if force:
                domain.destroy()
            else:
                domain.shutdown()
        except libvirt.libvirtError as exc:
            raise TemplateBuildError(f"Failed to stop VM {handle.name}: {_error_message(exc)}") from exc

    def remove_vm(self, handle: VirtualMachineHandle) -> None:
        domain = self._domain(handle.name)
        if domain.isActive():
            raise TemplateBuildError(f"Refusing to delete VM {handle.name}: it is still running")
        try:
            # UEFI domains need the NVRAM flag to undefine
            domain.undefineFlags(libvirt.VIR_DOMAIN_UNDEFINE_NVRAM)
        except libvirt.libvirtError as exc:
            raise TemplateBuildError(f"Failed to delete VM {handle.name}: {_error_message(exc)}") from exc

    def heartbeat_status(self, handle: VirtualMachineHandle) -> Optional[str]:
        domain = self._query_domain(handle.name)
        if not domain.isActive():
            return None
        try:
            reply = libvirt_qemu.qemuAgentCommand(domain, '{"execute":"guest-ping"}', GUEST_AGENT_TIMEOUT, 0)
        except libvirt.libvirtError as exc:
            log("DEBUG", f"Guest agent on {handle.name} not answering: {_error_message(exc)}", verbose=self.settings.verbose)
            return "No Contact"
        try:
            json.loads(reply)
        except (TypeError, ValueError):
            return "Error"
        return HEARTBEAT_OK

    def ip_addresses(self, handle: VirtualMachineHandle) -> List[str]:
        domain = self._query_domain(handle.name)
        try:
            interfaces = domain.interfaceAddresses(libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_AGENT, 0)
        except libvirt.libvirtError as exc:
            raise TransientError(f"Cannot read addresses of {handle.name}: {_error_message(exc)}") from exc
        return usable_addresses(interfaces or {})

    def integration_statuses(self, handle: VirtualMachineHandle) -> List[Optional[str]]:
        domain = self._query_domain(handle.name)
        try:
            active = domain.isActive()
            xml = domain.XMLDesc(0)
        except libvirt.libvirtError as exc:
            raise TransientError(f"Cannot read state of {handle.name}: {_error_message(exc)}") from exc
        statuses = channel_statuses(xml)
        if not active:
            return [None] + [None for _ in statuses]
        return ["Running"] + statuses

    def first_switch(self) -> str:
        try:
            networks = self._connection().listNetworks()
        except libvirt.libvirtError as exc:
            raise TemplateBuildError(f"Failed to list networks on {self.host}: {_error_message(exc)}") from exc
        if not networks:
            raise TemplateBuildError(f"No active virtual network found on {self.host}")
        return networks[0]

    def mount_disk(self, path: Path) -> Path:
        return self.mounter.mount(path)

    def dismount_disk(self, path: Path) -> None:
        self.mounter.dismount(path)
