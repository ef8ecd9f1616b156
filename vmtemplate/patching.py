"""Offline servicing of the disk file."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from vmtemplate.constants import PATCH_LOG_SUFFIX
from vmtemplate.exceptions import ConfigError
from vmtemplate.models import BuildSettings
from vmtemplate.tools import ExternalTools
from vmtemplate.utils import collect_logs, ensure_directory, log


class PatchApplier:
    def __init__(self, tools: ExternalTools, settings: BuildSettings) -> None:
        self.tools = tools
        self.settings = settings

    def apply_patches(
        self,
        disk_path: Path,
        patch_server: Optional[str],
        target_group: Optional[str],
        work_dir: Path,
        log_dir: Path,
    ) -> List[Path]:
        """Patch the unattached disk in place. Returns the log files collected from beside it."""
        if not patch_server:
            log("INFO", "No patch server configured; skipping offline patching")
            return []
        if not target_group:
            raise ConfigError("A patch target group is required when a patch server is set")
        if not disk_path.exists():
            raise ConfigError(f"Disk to patch not found: {disk_path}")

        mount_dir = work_dir / "patch-mount"
        ensure_directory(mount_dir)
        content_share = self.settings.patch_content_share.format(server=patch_server)
        try:
            self.tools.apply_offline_patches(disk_path, mount_dir, patch_server, target_group, content_share)
        finally:
            collected = collect_logs(disk_path.parent, log_dir, PATCH_LOG_SUFFIX, move=True)
            if collected:
                log("INFO", f"Collected {len(collected)} patch log(s) into {log_dir}")
        log("SUCCESS", f"Patched {disk_path}")
        return collected
