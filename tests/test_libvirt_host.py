"""Tests for vmtemplate.libvirt_host module."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch
from xml.etree.ElementTree import fromstring

import pytest

libvirt = pytest.importorskip("libvirt")

from vmtemplate.exceptions import TemplateBuildError, TransientError  # noqa: E402
from vmtemplate.libvirt_host import (  # noqa: E402
    LibvirtHypervisor,
    channel_statuses,
    libvirt_uri_for,
    render_domain_xml,
    usable_addresses,
)
from vmtemplate.models import BuildSettings, VirtualMachineHandle, VmSpec  # noqa: E402

HANDLE = VirtualMachineHandle("tmpl-build", "hv01")


@pytest.fixture
def hv():
    hypervisor = LibvirtHypervisor("hv01", BuildSettings(), mounter=MagicMock())
    hypervisor.conn = MagicMock()
    return hypervisor


def _domain(active=True, xml="<domain><devices/></domain>"):
    domain = MagicMock()
    domain.isActive.return_value = active
    domain.XMLDesc.return_value = xml
    return domain


class TestHelpers:
    def test_local_hosts_use_system_uri(self):
        assert libvirt_uri_for("localhost", "qemu+ssh://root@{host}/system") == "qemu:///system"

    def test_remote_host_fills_template(self):
        assert libvirt_uri_for("hv01", "qemu+ssh://root@{host}/system") == "qemu+ssh://root@hv01/system"

    def test_generation_two_domain(self):
        spec = VmSpec(name="vm", disk_path=Path("/d/vm.vhdx"), switch="lan", memory_mb=4096, cpus=1, generation=2)
        root = fromstring(render_domain_xml(spec))
        assert root.findtext("name") == "vm"
        assert root.find("os").get("firmware") == "efi"
        assert root.find("os/type").get("machine") == "q35"
        disk = root.find("devices/disk")
        assert disk.find("driver").get("type") == "vhdx"
        assert disk.find("target").get("dev") == "sda"
        assert root.find("devices/interface/source").get("network") == "lan"
        assert root.find("devices/channel/target").get("name") == "org.qemu.guest_agent.0"

    def test_channel_statuses(self):
        xml = (
            "<domain><devices>"
            "<channel><target type='virtio' name='a' state='connected'/></channel>"
            "<channel><target type='virtio' name='b' state='disconnected'/></channel>"
            "<channel><target type='virtio' name='c'/></channel>"
            "</devices></domain>"
        )
        assert channel_statuses(xml) == ["OK", "No Contact", None]

    def test_usable_addresses_ipv4_first(self):
        interfaces = {
            "lo": {"addrs": [{"addr": "127.0.0.1"}]},
            "eth0": {"addrs": [{"addr": "fe80::1"}, {"addr": "fd00::5"}, {"addr": "10.0.0.5"}]},
            "eth1": {"addrs": None},
        }
        assert usable_addresses(interfaces) == ["10.0.0.5", "fd00::5"]


class TestLibvirtHypervisor:
    def test_connect_failure(self):
        hypervisor = LibvirtHypervisor("hv01", BuildSettings())
        with patch("vmtemplate.libvirt_host.libvirt.open", side_effect=libvirt.libvirtError("refused")):
            with pytest.raises(TemplateBuildError, match="Failed to open libvirt connection"):
                hypervisor.connect()

    def test_first_switch(self, hv):
        hv.conn.listNetworks.return_value = ["default", "lan"]
        assert hv.first_switch() == "default"

    def test_no_switch(self, hv):
        hv.conn.listNetworks.return_value = []
        with pytest.raises(TemplateBuildError):
            hv.first_switch()

    def test_vm_exists(self, hv):
        missing = libvirt.libvirtError("no domain")
        missing.get_error_code = lambda: libvirt.VIR_ERR_NO_DOMAIN
        hv.conn.lookupByName.side_effect = missing
        assert hv.vm_exists("ghost") is False

    def test_vm_exists_lookup_failure_is_transient(self, hv):
        broken = libvirt.libvirtError("connection reset")
        broken.get_error_code = lambda: libvirt.VIR_ERR_RPC
        hv.conn.lookupByName.side_effect = broken
        with pytest.raises(TransientError):
            hv.vm_exists("tmpl-build")

    def test_remove_refuses_running_vm(self, hv):
        hv.conn.lookupByName.return_value = _domain(active=True)
        with pytest.raises(TemplateBuildError, match="still running"):
            hv.remove_vm(HANDLE)

    def test_remove_undefines_with_nvram(self, hv):
        domain = _domain(active=False)
        hv.conn.lookupByName.return_value = domain
        hv.remove_vm(HANDLE)
        domain.undefineFlags.assert_called_once_with(libvirt.VIR_DOMAIN_UNDEFINE_NVRAM)

    def test_force_stop_destroys(self, hv):
        domain = _domain(active=True)
        hv.conn.lookupByName.return_value = domain
        hv.stop_vm(HANDLE, force=True)
        domain.destroy.assert_called_once_with()

    def test_set_mac_redefines_domain(self, hv):
        hv.conn.lookupByName.return_value = _domain(
            xml="<domain><devices><interface type='network'><source network='lan'/></interface></devices></domain>"
        )
        hv.set_mac_address(HANDLE, "00:15:5d:00:00:01")
        xml = hv.conn.defineXML.call_args[0][0]
        assert fromstring(xml).find("devices/interface/mac").get("address") == "00:15:5d:00:00:01"

    def test_heartbeat_ok(self, hv):
        hv.conn.lookupByName.return_value = _domain()
        with patch("vmtemplate.libvirt_host.libvirt_qemu.qemuAgentCommand", return_value='{"return": {}}'):
            assert hv.heartbeat_status(HANDLE) == "OK"

    def test_heartbeat_agent_silent(self, hv):
        hv.conn.lookupByName.return_value = _domain()
        with patch(
            "vmtemplate.libvirt_host.libvirt_qemu.qemuAgentCommand", side_effect=libvirt.libvirtError("agent not connected")
        ):
            assert hv.heartbeat_status(HANDLE) == "No Contact"

    def test_heartbeat_stopped_vm(self, hv):
        hv.conn.lookupByName.return_value = _domain(active=False)
        assert hv.heartbeat_status(HANDLE) is None

    def test_query_on_missing_vm_is_transient(self, hv):
        hv.conn.lookupByName.side_effect = libvirt.libvirtError("no domain")
        with pytest.raises(TransientError):
            hv.ip_addresses(HANDLE)

    def test_integration_statuses_empty_when_off(self, hv):
        xml = "<domain><devices><channel><target type='virtio' name='a' state='disconnected'/></channel></devices></domain>"
        hv.conn.lookupByName.return_value = _domain(active=False, xml=xml)
        assert hv.integration_statuses(HANDLE) == [None, None]

    def test_integration_statuses_running(self, hv):
        xml = "<domain><devices><channel><target type='virtio' name='a' state='connected'/></channel></devices></domain>"
        hv.conn.lookupByName.return_value = _domain(active=True, xml=xml)
        assert hv.integration_statuses(HANDLE) == ["Running", "OK"]

    def test_create_disk_defines_volume_in_host_pool(self, hv):
        pool = hv.conn.storagePoolLookupByTargetPath.return_value
        hv.create_disk(Path("/srv/hyperv/vms/tmpl-sdb.vhdx"), "10G")
        hv.conn.storagePoolLookupByTargetPath.assert_called_once_with("/srv/hyperv/vms")
        xml, flags = pool.createXML.call_args[0]
        volume = fromstring(xml)
        assert volume.findtext("name") == "tmpl-sdb.vhdx"
        assert volume.find("capacity").get("unit") == "G"
        assert volume.findtext("capacity") == "10"
        assert volume.find("target/format").get("type") == "vhdx"
        assert flags == 0

    def test_create_disk_without_pool(self, hv):
        hv.conn.storagePoolLookupByTargetPath.side_effect = libvirt.libvirtError("no pool")
        with pytest.raises(TemplateBuildError, match="No storage pool on hv01 covers /srv/hyperv/vms"):
            hv.create_disk(Path("/srv/hyperv/vms/tmpl-sdb.vhdx"), "10G")

    def test_create_disk_never_runs_local_tools(self, hv):
        with patch("vmtemplate.utils.subprocess.run") as mock_run:
            hv.create_disk(Path("/srv/hyperv/vms/tmpl-sdb.qcow2"), "512")
        mock_run.assert_not_called()
        volume = fromstring(hv.conn.storagePoolLookupByTargetPath.return_value.createXML.call_args[0][0])
        assert volume.find("capacity").get("unit") == "bytes"
        assert volume.find("target/format").get("type") == "qcow2"

    def test_mount_delegates_to_mounter(self, hv):
        hv.mounter.mount.return_value = Path("/tmp/mount-x")
        assert hv.mount_disk(Path("/d/x.vhdx")) == Path("/tmp/mount-x")
        hv.dismount_disk(Path("/d/x.vhdx"))
        hv.mounter.dismount.assert_called_once_with(Path("/d/x.vhdx"))
