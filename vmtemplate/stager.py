"""Build the template's disk from an install image."""

from __future__ import annotations

import shutil
from pathlib import Path

from vmtemplate.constants import ANSWER_FILE_NAME, RESOURCE_DIR_NAME
from vmtemplate.disks import mounted_disk
from vmtemplate.exceptions import ConfigError, TemplateBuildError
from vmtemplate.hypervisor import Hypervisor
from vmtemplate.models import BuildSettings
from vmtemplate.tools import ExternalTools
from vmtemplate.utils import ensure_directory, log, resolve_case_insensitive


class DiskImageStager:
    def __init__(self, hypervisor: Hypervisor, tools: ExternalTools, settings: BuildSettings) -> None:
        self.hypervisor = hypervisor
        self.tools = tools
        self.settings = settings

    def build_disk(self, image: Path, edition: str, config_dir: Path, disk_path: Path) -> None:
        if not image.exists():
            raise ConfigError(f"Source image not found: {image}")
        if not config_dir.is_dir():
            raise ConfigError(f"Configuration directory not found: {config_dir}")
        unattend = config_dir / ANSWER_FILE_NAME
        if not unattend.is_file():
            raise ConfigError(f"Answer file missing: {unattend}")

        ensure_directory(disk_path.parent)
        self.tools.convert_image(image, edition, disk_path, unattend)
        if not disk_path.exists():
            raise TemplateBuildError(f"Image conversion finished but {disk_path} was not created")
        log("SUCCESS", f"Created disk {disk_path}")

        with mounted_disk(self.hypervisor, disk_path) as mount_point:
            copied = self.copy_payload(config_dir, mount_point)
        log("SUCCESS", f"Copied {copied} configuration item(s) into {RESOURCE_DIR_NAME}")

    def copy_payload(self, config_dir: Path, mount_point: Path) -> int:
        resource_dir = resolve_case_insensitive(mount_point, RESOURCE_DIR_NAME) or mount_point / RESOURCE_DIR_NAME
        ensure_directory(resource_dir)
        count = 0
        for item in sorted(config_dir.iterdir()):
            destination = resource_dir / item.name
            if item.is_dir():
                shutil.copytree(item, destination, dirs_exist_ok=True)
            else:
                shutil.copy2(item, destination)
            log("DEBUG", f"Copied {item} -> {destination}", verbose=self.settings.verbose)
            count += 1
        return count
