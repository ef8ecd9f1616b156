"""Shared test fixtures."""

from __future__ import annotations

import pytest

from fakes import FakeClock, FakeHypervisor, FakeTools, FakeTransport
from vmtemplate.models import BuildSettings, Credential, ProvisioningRequest
from vmtemplate.waiter import PollingWaiter


@pytest.fixture
def settings() -> BuildSettings:
    return BuildSettings(poll_interval=5, wait_timeout=60, shutdown_timeout=60, readiness_attempts=10)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def waiter(settings, clock) -> PollingWaiter:
    return PollingWaiter(settings, clock=clock, sleep=clock.sleep)


@pytest.fixture
def hypervisor(tmp_path) -> FakeHypervisor:
    return FakeHypervisor(tmp_path / "host")


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def tools() -> FakeTools:
    return FakeTools()


@pytest.fixture
def config_dir(tmp_path):
    path = tmp_path / "config"
    path.mkdir()
    (path / "unattend.xml").write_text("<unattend/>\n")
    return path


@pytest.fixture
def request_for(tmp_path, config_dir):
    """Factory for a ProvisioningRequest rooted in tmp_path."""

    def _make(**overrides) -> ProvisioningRequest:
        image = tmp_path / "install.wim"
        image.write_bytes(b"image")
        values = dict(
            image=image,
            edition="ServerStandard",
            config_dir=config_dir,
            machine_name="tmpl-build",
            credential=Credential("Administrator", "s3cret!"),
            disk_path=tmp_path / "work" / "tmpl-build.vhdx",
            template_path=tmp_path / "templates" / "server.vhdx",
            host="hv01",
            work_dir=tmp_path / "scratch",
            log_dir=tmp_path / "logs",
        )
        values.update(overrides)
        return ProvisioningRequest(**values)

    return _make


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


# Every environment variable config.py reads.
_CONFIG_ENV_VARS = [
    "SOURCE_IMAGE",
    "IMAGE_EDITION",
    "CONFIG_DIR",
    "VM_NAME",
    "ADMIN_USER",
    "ADMIN_PASSWORD",
    "DISK_PATH",
    "TEMPLATE_PATH",
    "VM_HOST",
    "MAC_ADDRESS",
    "PATCH_SERVER",
    "PATCH_TARGET_GROUP",
    "WORK_DIR",
    "LOG_DIR",
    "EXTRA_DISKS",
    "POLL_INTERVAL",
    "WAIT_TIMEOUT",
    "SHUTDOWN_TIMEOUT",
    "READINESS_ATTEMPTS",
    "VM_MEMORY",
    "VM_CPUS",
    "LOG_VERBOSE",
    "STRICT_POLLING",
    "LIBVIRT_URI",
    "WINRM_PORT",
    "PATCH_CONTENT_SHARE",
    "TOOLS_CONFIG",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Clear every variable config.py reads and point TOOLS_CONFIG at a missing file."""
    for key in _CONFIG_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("TOOLS_CONFIG", str(tmp_path / "no-tools.yaml"))
