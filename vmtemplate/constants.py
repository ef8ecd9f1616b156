"""Global constants and path configuration for vm-template-builder."""

from __future__ import annotations

import os
import re
from pathlib import Path

DEFAULT_TOOLS_CONFIG_PATH = Path("/config/tools.yaml")
DEFAULT_WORK_DIR = Path("/var/lib/vm-template-builder")
DEFAULT_LOG_DIR = DEFAULT_WORK_DIR / "logs"

# {host} is substituted with the host identifier of the request.
LIBVIRT_URI = os.environ.get("LIBVIRT_URI", "qemu+ssh://root@{host}/system")
LOCAL_LIBVIRT_URI = "qemu:///system"
LOCAL_HOSTS = {"", ".", "localhost", "127.0.0.1"}

TRUTHY = {"1", "true", "yes", "on"}
MAC_ADDRESS_RE = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$")
DISK_SIZE_RE = re.compile(r"^\d+[KMGTkmgt]?$")

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

_SENSITIVE_FIELDS = {"password"}

# Polling
POLL_INTERVAL_SECONDS = 5
DEFAULT_TIMEOUT_SECONDS = 900
READINESS_ATTEMPTS = 10
# guestmount keeps writing the image back after guestunmount returns
GUESTMOUNT_EXIT_TIMEOUT = 120
GUESTMOUNT_EXIT_POLL_SECONDS = 1

# VM shape
VM_MEMORY_MB = 4096
VM_CPUS = 1
VM_GENERATION = 2
HEARTBEAT_OK = "OK"
DISK_BUS = "sata"
BOOT_DISK_TARGET = "sda"
DISK_TARGET_PREFIX = "sd"
NIC_MODEL = "e1000e"
GUEST_AGENT_CHANNEL = "org.qemu.guest_agent.0"
GUEST_AGENT_TIMEOUT = 5

# Disk staging
DISK_SIZE_QUOTA = "40G"
DISK_FORMAT = "VHDX"
DISK_TYPE = "Dynamic"
PARTITION_STYLE = "GPT"
DISK_LAYOUT = "UEFI"
ANSWER_FILE_NAME = "unattend.xml"
RESOURCE_DIR_NAME = "Resources"

# qemu-img format names keyed by disk file suffix
DISK_FORMATS = {
    ".vhdx": "vhdx",
    ".vhd": "vpc",
    ".qcow2": "qcow2",
    ".img": "raw",
    ".raw": "raw",
}

# Offline servicing
PATCH_SERVER_PORT = 8530
PATCH_CONTENT_SHARE = r"\\{server}\UpdateServicesPackages"
PATCH_LOG_SUFFIX = "patch"
SEAL_LOG_SUFFIX = "seal"

# Remote administration
WINRM_PORT = 5985
WINRM_TRANSPORT = "ntlm"
WINRM_PROBE_TIMEOUT = 10
SYSPREP_ARGUMENTS = ("/generalize", "/oobe", "/shutdown", "/quiet")

# Guest layout (relative to the mounted volume root)
PAGEFILE_NAME = "pagefile.sys"
PROFILES_DIR = "Users"
KEPT_PROFILES = {"default", "public"}
EVENT_LOG_DIR = "Windows/System32/winevt/Logs"
EVENT_LOG_PATTERN = "*.evtx"

# (directory, label used as the renamed-copy suffix)
GUEST_LOG_SOURCES = (
    ("Windows/Panther", "panther"),
    ("Windows/Panther/UnattendGC", "unattendgc"),
    ("Windows/System32/Sysprep/Panther", "sysprep"),
    ("Windows/Logs/CBS", "cbs"),
    ("Windows/Logs/DISM", "dism"),
)

# Removed after sealing when present; absence is not an error.
TRANSIENT_GUEST_PATHS = (
    "Windows/SoftwareDistribution/Download",
    "Windows/Temp",
    "Windows/Logs",
    "Windows/Panther",
    "Windows/WinSxS/ManifestCache",
    "ProgramData/Microsoft/Windows/WER",
)

# NTFS FILE_ATTRIBUTE_NORMAL, exposed by ntfs-3g through this xattr
NTFS_ATTRIB_XATTR = "system.ntfs_attrib_be"
NTFS_ATTRIBUTE_NORMAL = 0x80

# External tool command templates. Placeholders are filled by tools.render_command().
DEFAULT_TOOL_COMMANDS = {
    "convert": [
        "convert-windows-image",
        "--source-path", "{image}",
        "--edition", "{edition}",
        "--vhd-path", "{disk}",
        "--size", "{size}",
        "--vhd-format", "{format}",
        "--disk-type", "{disk_type}",
        "--partition-style", "{partition_style}",
        "--layout", "{layout}",
        "--unattend", "{unattend}",
    ],
    "patch": [
        "offline-patch",
        "--disk", "{disk}",
        "--mount-dir", "{mount_dir}",
        "--server", "{server}",
        "--port", "{port}",
        "--target-group", "{target_group}",
        "--content-share", "{content_share}",
    ],
    "component_cleanup": [
        "dism",
        "/Image:{mount}",
        "/Cleanup-Image",
        "/StartComponentCleanup",
        "/ResetBase",
    ],
}

# Tried in order; the first whose executable is installed is used.
DEFAULT_COMPACT_COMMANDS = [
    ["virt-sparsify", "--in-place", "{disk}"],
    ["pwsh", "-NoProfile", "-Command", "Optimize-VHD -Path '{disk}' -Mode Full"],
]
