"""vm-template-builder package."""

__all__ = [
    "cli",
    "config",
    "constants",
    "disks",
    "exceptions",
    "hypervisor",
    "libvirt_host",
    "lifecycle",
    "models",
    "patching",
    "pipeline",
    "readiness",
    "remote",
    "sealer",
    "stager",
    "sysprep",
    "tools",
    "utils",
    "waiter",
]
