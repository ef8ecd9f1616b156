"""CLI entry point for vm-template-builder."""

from __future__ import annotations

import argparse
import dataclasses
from typing import List, Optional

from vmtemplate.config import build_request, parse_settings
from vmtemplate.constants import _SENSITIVE_FIELDS
from vmtemplate.exceptions import TemplateBuildError
from vmtemplate.models import BuildSettings, ProvisioningRequest
from vmtemplate.pipeline import ProvisioningPipeline
from vmtemplate.remote import WinRMTransport
from vmtemplate.tools import ExternalTools
from vmtemplate.utils import log, translate_path


def _print_fields(obj, indent: str = "  ") -> None:
    for field in dataclasses.fields(obj):
        value = getattr(obj, field.name)
        if field.name in _SENSITIVE_FIELDS:
            print(f"{indent}{field.name}: ********")
        elif dataclasses.is_dataclass(value):
            print(f"{indent}{field.name}:")
            _print_fields(value, indent + "  ")
        elif isinstance(value, dict) and value:
            print(f"{indent}{field.name}:")
            for key, item in value.items():
                print(f"{indent}  {key}: {' '.join(item) if isinstance(item, list) else item}")
        else:
            print(f"{indent}{field.name}: {value}")


def show_config(request: ProvisioningRequest, settings: BuildSettings) -> None:
    """Print the resolved request and settings with secrets masked."""
    print("Request:")
    _print_fields(request)
    print("Settings:")
    _print_fields(settings)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Build a generalized VM template disk from an install image")
    parser.add_argument("--image", help="Source install image (env SOURCE_IMAGE)")
    parser.add_argument("--edition", help="Edition to install from the image (env IMAGE_EDITION)")
    parser.add_argument("--config-dir", dest="config_dir", help="Directory with unattend.xml and payload (env CONFIG_DIR)")
    parser.add_argument("--name", help="Build VM name (env VM_NAME)")
    parser.add_argument("--user", help="Guest administrator user (env ADMIN_USER)")
    parser.add_argument("--password-file", dest="password_file", help="File holding the administrator password (else ADMIN_PASSWORD)")
    parser.add_argument("--disk-path", dest="disk_path", help="Working disk file (env DISK_PATH)")
    parser.add_argument("--template-path", dest="template_path", help="Published template location (env TEMPLATE_PATH)")
    parser.add_argument("--host", help="Hypervisor host (env VM_HOST, default localhost)")
    parser.add_argument("--mac-address", dest="mac_address", help="Fixed MAC for the build VM (env MAC_ADDRESS)")
    parser.add_argument("--patch-server", dest="patch_server", help="Update server for offline patching (env PATCH_SERVER)")
    parser.add_argument("--patch-target-group", dest="patch_target_group", help="Update target group (env PATCH_TARGET_GROUP)")
    parser.add_argument("--extra-disks", dest="extra_disks", help="Comma-separated sizes of extra data disks (env EXTRA_DISKS)")
    parser.add_argument("--work-dir", dest="work_dir", help="Scratch directory (env WORK_DIR)")
    parser.add_argument("--log-dir", dest="log_dir", help="Directory collecting build logs (env LOG_DIR)")
    parser.add_argument("--show-config", action="store_true", help="Show resolved configuration and exit")
    parser.add_argument("--dry-run", action="store_true", help="Validate configuration, print the stage plan and exit")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = parse_settings()
        request = build_request(args)
    except TemplateBuildError as exc:
        log("ERROR", str(exc))
        return 1

    if args.show_config:
        show_config(request, settings)
        return 0

    tools = ExternalTools(settings)

    if args.dry_run:
        log("INFO", "=== Configuration ===")
        show_config(request, settings)
        log("INFO", f"Disk as seen by {request.host}: {translate_path(request.disk_path, settings.shares)}")
        log("INFO", "=== Stage plan ===")
        for idx, stage in enumerate(ProvisioningPipeline.plan(), start=1):
            log("INFO", f"{idx}. {stage.name}: {stage.requires} -> {stage.produces}")
        for name, cmd in tools.describe().items():
            log("INFO", f"Tool {name}: {cmd}")
        log("INFO", "=== Dry-run complete (nothing built) ===")
        return 0

    from vmtemplate.libvirt_host import LibvirtHypervisor

    log("INFO", f"Building template {request.template_path} from {request.image} ({request.edition})")
    log("INFO", f"VM: {request.machine_name} | Host: {request.host} | Memory: {settings.memory_mb} MiB")

    transport = WinRMTransport(port=settings.winrm_port, verbose=settings.verbose)
    hypervisor = LibvirtHypervisor(request.host, settings)
    try:
        hypervisor.connect()
        ProvisioningPipeline(request, settings, hypervisor, transport, tools).run()
        return 0
    except TemplateBuildError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
    finally:
        hypervisor.close()
