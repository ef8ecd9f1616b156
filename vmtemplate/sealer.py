"""Seal the generalized disk and publish it as a template."""

from __future__ import annotations

import errno
import os
import shutil
import stat
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Callable, List

from vmtemplate.constants import (
    EVENT_LOG_DIR,
    EVENT_LOG_PATTERN,
    GUEST_LOG_SOURCES,
    KEPT_PROFILES,
    NTFS_ATTRIB_XATTR,
    NTFS_ATTRIBUTE_NORMAL,
    PAGEFILE_NAME,
    PROFILES_DIR,
    SEAL_LOG_SUFFIX,
    TRANSIENT_GUEST_PATHS,
)
from vmtemplate.disks import mounted_disk
from vmtemplate.hypervisor import Hypervisor
from vmtemplate.lifecycle import VmLifecycleController
from vmtemplate.models import BuildSettings, VirtualMachineHandle
from vmtemplate.tools import ExternalTools
from vmtemplate.utils import collect_logs, ensure_directory, log, resolve_case_insensitive


@dataclass
class OptionalCleanup:
    description: str
    action: Callable[[], None]


def clear_attributes(path: Path) -> None:
    """Drop read-only/hidden/system attributes so the file can be deleted."""
    if hasattr(os, "setxattr"):
        try:
            os.setxattr(path, NTFS_ATTRIB_XATTR, NTFS_ATTRIBUTE_NORMAL.to_bytes(4, "big"))
        except OSError as exc:
            # not an ntfs-3g mount
            if exc.errno not in (errno.ENOTSUP, errno.EOPNOTSUPP, errno.ENODATA, errno.EPERM):
                raise
    path.chmod(path.stat().st_mode | stat.S_IWRITE)


def remove_path(root: Path, relative: str) -> bool:
    """Delete a file or directory under root; returns False when it does not exist."""
    target = resolve_case_insensitive(root, relative)
    if target is None:
        return False
    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target)
    else:
        target.unlink()
    return True


class TemplateSealer:
    def __init__(
        self,
        hypervisor: Hypervisor,
        lifecycle: VmLifecycleController,
        tools: ExternalTools,
        settings: BuildSettings,
    ) -> None:
        self.hypervisor = hypervisor
        self.lifecycle = lifecycle
        self.tools = tools
        self.settings = settings

    def seal(self, handle: VirtualMachineHandle, disk_path: Path, template_path: Path, log_dir: Path) -> Path:
        self.lifecycle.delete(handle)

        with mounted_disk(self.hypervisor, disk_path) as root:
            self.collect_guest_logs(root, log_dir)
            self.remove_pagefile(root)
            self.remove_profiles(root)
            self.clear_event_logs(root)
            self.tools.cleanup_component_store(root)
            self.run_optional(self.optional_cleanups(root))
            moved = collect_logs(disk_path.parent, log_dir, SEAL_LOG_SUFFIX, move=True)
            if moved:
                log("INFO", f"Moved {len(moved)} log file(s) from beside {disk_path.name} into {log_dir}")

        if not self.tools.compact_disk(disk_path):
            log("WARN", "No disk compaction tool available; template will not be defragmented")

        return self.archive(disk_path, template_path)

    def collect_guest_logs(self, root: Path, log_dir: Path) -> List[Path]:
        collected: List[Path] = []
        for relative, label in GUEST_LOG_SOURCES:
            source = resolve_case_insensitive(root, relative)
            if source is None:
                continue
            collected.extend(collect_logs(source, log_dir, label))
        log("INFO", f"Collected {len(collected)} guest setup log(s)")
        return collected

    def remove_pagefile(self, root: Path) -> bool:
        pagefile = resolve_case_insensitive(root, PAGEFILE_NAME)
        if pagefile is None:
            log("DEBUG", "No paging file present", verbose=self.settings.verbose)
            return False
        clear_attributes(pagefile)
        pagefile.unlink()
        log("INFO", f"Removed {PAGEFILE_NAME}")
        return True

    def remove_profiles(self, root: Path) -> List[str]:
        profiles = resolve_case_insensitive(root, PROFILES_DIR)
        removed: List[str] = []
        if profiles is None:
            return removed
        for entry in sorted(profiles.iterdir()):
            # junctions such as "All Users" show up as symlinks
            if entry.is_symlink() or not entry.is_dir():
                continue
            if entry.name.lower() in KEPT_PROFILES:
                continue
            shutil.rmtree(entry)
            removed.append(entry.name)
        if removed:
            log("INFO", f"Removed user profiles: {', '.join(removed)}")
        return removed

    def clear_event_logs(self, root: Path) -> int:
        logs_dir = resolve_case_insensitive(root, EVENT_LOG_DIR)
        if logs_dir is None:
            return 0
        count = 0
        for item in logs_dir.glob(EVENT_LOG_PATTERN):
            item.unlink()
            count += 1
        log("INFO", f"Deleted {count} event log file(s)")
        return count

    def optional_cleanups(self, root: Path) -> List[OptionalCleanup]:
        return [
            OptionalCleanup(f"remove {relative}", partial(remove_path, root, relative))
            for relative in TRANSIENT_GUEST_PATHS
        ]

    def run_optional(self, operations: List[OptionalCleanup]) -> int:
        """Run each operation, swallowing its failure. Returns how many failed."""
        failures = 0
        for operation in operations:
            try:
                operation.action()
            except Exception as exc:  # noqa: BLE001
                failures += 1
                log("DEBUG", f"Skipped optional cleanup ({operation.description}): {exc}", verbose=self.settings.verbose)
        return failures

    def archive(self, disk_path: Path, template_path: Path) -> Path:
        ensure_directory(template_path.parent)
        partial_path = template_path.with_name(template_path.name + ".partial")
        log("INFO", f"Copying {disk_path} to {template_path}")
        try:
            shutil.copy2(disk_path, partial_path)
            partial_path.replace(template_path)
        except Exception:
            partial_path.unlink(missing_ok=True)
            raise
        log("SUCCESS", f"Template written to {template_path}")
        return template_path
