"""External tool invocation (image converter, offline patcher, cleanup, compaction)."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional

from vmtemplate.constants import (
    DISK_FORMAT,
    DISK_LAYOUT,
    DISK_SIZE_QUOTA,
    DISK_TYPE,
    PARTITION_STYLE,
    PATCH_SERVER_PORT,
)
from vmtemplate.exceptions import ConfigError, ToolError
from vmtemplate.models import BuildSettings
from vmtemplate.utils import log, run


def render_command(template: List[str], **params) -> List[str]:
    """Fill ``{placeholders}`` in a command template."""
    try:
        return [part.format(**params) for part in template]
    except KeyError as exc:
        raise ConfigError(f"Command template {' '.join(template)!r} uses unknown placeholder {exc}") from exc


class ExternalTools:
    def __init__(self, settings: BuildSettings) -> None:
        self.settings = settings

    def _command(self, name: str) -> List[str]:
        template = self.settings.tool_commands.get(name)
        if not template:
            raise ConfigError(f"No command configured for tool '{name}'")
        return template

    def _invoke(self, name: str, cmd: List[str], cwd: Optional[Path] = None) -> None:
        try:
            run(cmd, verbose=self.settings.verbose, cwd=str(cwd) if cwd else None)
        except FileNotFoundError as exc:
            raise ConfigError(f"{name} tool '{cmd[0]}' is not installed") from exc
        except subprocess.CalledProcessError as exc:
            raise ToolError(name, exc.returncode, " ".join(cmd)) from exc

    def convert_image(self, image: Path, edition: str, disk: Path, unattend: Path) -> None:
        cmd = render_command(
            self._command("convert"),
            image=image,
            edition=edition,
            disk=disk,
            size=DISK_SIZE_QUOTA,
            format=DISK_FORMAT,
            disk_type=DISK_TYPE,
            partition_style=PARTITION_STYLE,
            layout=DISK_LAYOUT,
            unattend=unattend,
        )
        log("INFO", f"Converting {image} ({edition}) to {disk}")
        self._invoke("convert", cmd)

    def apply_offline_patches(
        self, disk: Path, mount_dir: Path, server: str, target_group: str, content_share: str
    ) -> None:
        cmd = render_command(
            self._command("patch"),
            disk=disk,
            mount_dir=mount_dir,
            server=server,
            port=PATCH_SERVER_PORT,
            target_group=target_group,
            content_share=content_share,
        )
        log("INFO", f"Applying updates from {server}:{PATCH_SERVER_PORT} (group {target_group}) to {disk}")
        self._invoke("patch", cmd, cwd=disk.parent)

    def cleanup_component_store(self, mount: Path) -> None:
        cmd = render_command(self._command("component_cleanup"), mount=mount)
        log("INFO", "Removing superseded components from the component store")
        self._invoke("component_cleanup", cmd)

    def compact_disk(self, disk: Path) -> bool:
        """Run the first installed compaction tool. Returns False if none is available."""
        for template in self.settings.compact_commands:
            if not template or shutil.which(template[0]) is None:
                continue
            cmd = render_command(template, disk=disk)
            log("INFO", f"Compacting {disk} with {template[0]}")
            self._invoke("compact", cmd)
            return True
        return False

    def describe(self) -> Dict[str, str]:
        return {name: " ".join(cmd) for name, cmd in self.settings.tool_commands.items()}
