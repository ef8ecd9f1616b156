"""Configuration loading and environment variable parsing for vm-template-builder."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Dict, List, Optional, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmtemplate.constants import (
    DEFAULT_COMPACT_COMMANDS,
    DEFAULT_LOG_DIR,
    DEFAULT_TOOL_COMMANDS,
    DEFAULT_TOOLS_CONFIG_PATH,
    DEFAULT_WORK_DIR,
    LIBVIRT_URI,
    PATCH_CONTENT_SHARE,
    VM_CPUS,
    WINRM_PORT,
)
from vmtemplate.exceptions import ConfigError
from vmtemplate.models import BuildSettings, Credential, ProvisioningRequest
from vmtemplate.utils import (
    get_env,
    get_env_bool,
    is_share_path,
    log,
    normalize_mac,
    parse_int_env,
    validate_disk_size,
)


def _command_list(name: str, raw) -> List[str]:
    if isinstance(raw, str):
        raw = raw.split()
    if not isinstance(raw, list) or not raw or not all(isinstance(part, (str, int)) for part in raw):
        raise ConfigError(f"Tool '{name}' must be a non-empty list of strings")
    return [str(part) for part in raw]


def load_tools_config(config_path: Optional[Path] = None) -> Dict[str, object]:
    """Read tool command overrides and share mappings.

    The file is optional; a missing file yields the built-in defaults.
    Recognised keys: ``tools`` (name -> command list), ``compact`` (list of
    command lists, tried in order) and ``shares`` (directory on this machine ->
    the same directory as the hypervisor host sees it).
    """
    if config_path is None:
        config_path = Path(get_env("TOOLS_CONFIG") or DEFAULT_TOOLS_CONFIG_PATH)
    tools = {name: list(cmd) for name, cmd in DEFAULT_TOOL_COMMANDS.items()}
    compact = [list(cmd) for cmd in DEFAULT_COMPACT_COMMANDS]
    shares: Dict[str, str] = {}
    if not config_path.exists():
        log("DEBUG", f"Tools config {config_path} not found; using built-in commands")
        return {"tools": tools, "compact": compact, "shares": shares}

    try:
        data = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")

    for name, cmd in (data.get("tools") or {}).items():
        tools[str(name)] = _command_list(str(name), cmd)
    if data.get("compact") is not None:
        entries = data["compact"]
        if not isinstance(entries, list):
            raise ConfigError("compact must be a list of commands")
        compact = [_command_list(f"compact[{idx}]", cmd) for idx, cmd in enumerate(entries)]
    raw_shares = data.get("shares") or {}
    if not isinstance(raw_shares, dict):
        raise ConfigError("shares must map builder directories to host directories")
    for local, remote in raw_shares.items():
        if not (Path(str(local)).is_absolute() and Path(str(remote)).is_absolute()):
            raise ConfigError(f"shares entry '{local}: {remote}' must use absolute paths on both sides")
    shares = {str(local): str(remote) for local, remote in raw_shares.items()}
    return {"tools": tools, "compact": compact, "shares": shares}


def parse_settings(config_path: Optional[Path] = None) -> BuildSettings:
    tools_cfg = load_tools_config(config_path)
    return BuildSettings(
        verbose=get_env_bool("LOG_VERBOSE", False),
        strict=get_env_bool("STRICT_POLLING", True),
        poll_interval=parse_int_env("POLL_INTERVAL", "5"),
        wait_timeout=parse_int_env("WAIT_TIMEOUT", "900"),
        shutdown_timeout=parse_int_env("SHUTDOWN_TIMEOUT", "900"),
        readiness_attempts=parse_int_env("READINESS_ATTEMPTS", "10"),
        memory_mb=parse_int_env("VM_MEMORY", "4096", min_val=512),
        cpus=parse_int_env("VM_CPUS", str(VM_CPUS)),
        libvirt_uri=get_env("LIBVIRT_URI", LIBVIRT_URI) or LIBVIRT_URI,
        winrm_port=parse_int_env("WINRM_PORT", str(WINRM_PORT), min_val=1, max_val=65535),
        patch_content_share=get_env("PATCH_CONTENT_SHARE", PATCH_CONTENT_SHARE) or PATCH_CONTENT_SHARE,
        tool_commands=tools_cfg["tools"],  # type: ignore[arg-type]
        compact_commands=tools_cfg["compact"],  # type: ignore[arg-type]
        shares=tools_cfg["shares"],  # type: ignore[arg-type]
    )


def _value(args: argparse.Namespace, attr: str, env: str, default: Optional[str] = None) -> Optional[str]:
    raw = getattr(args, attr, None)
    if raw is None:
        raw = get_env(env, default)
    if raw is not None:
        raw = str(raw).strip() or None
    return raw


def _required(args: argparse.Namespace, attr: str, env: str) -> str:
    value = _value(args, attr, env)
    if not value:
        flag = "--" + attr.replace("_", "-")
        raise ConfigError(f"Missing required value: pass {flag} or set {env}")
    return value


def _read_password(args: argparse.Namespace) -> str:
    password_file = getattr(args, "password_file", None)
    if password_file:
        path = Path(password_file)
        if not path.is_file():
            raise ConfigError(f"Password file not found: {path}")
        password = path.read_text().rstrip("\r\n")
    else:
        password = get_env("ADMIN_PASSWORD") or ""
    if not password:
        raise ConfigError("Missing administrator password: pass --password-file or set ADMIN_PASSWORD")
    return password


def parse_extra_disks(raw: Optional[str]) -> Tuple[str, ...]:
    if not raw:
        return ()
    return tuple(validate_disk_size(item.strip()) for item in raw.split(",") if item.strip())


def build_request(args: argparse.Namespace) -> ProvisioningRequest:
    raw_disk = _required(args, "disk_path", "DISK_PATH")
    if is_share_path(raw_disk):
        raise ConfigError(
            f"Disk path {raw_disk} must be reachable on this machine; mount the share and map it with shares:"
        )
    disk_path = Path(raw_disk)
    template_path = Path(_required(args, "template_path", "TEMPLATE_PATH"))
    if disk_path == template_path:
        raise ConfigError("Template path must differ from the working disk path")

    mac = _value(args, "mac_address", "MAC_ADDRESS")
    if mac:
        mac = normalize_mac(mac)

    patch_server = _value(args, "patch_server", "PATCH_SERVER")
    target_group = _value(args, "patch_target_group", "PATCH_TARGET_GROUP")
    if patch_server and not target_group:
        raise ConfigError("PATCH_TARGET_GROUP is required when PATCH_SERVER is set")

    return ProvisioningRequest(
        image=Path(_required(args, "image", "SOURCE_IMAGE")),
        edition=_required(args, "edition", "IMAGE_EDITION"),
        config_dir=Path(_required(args, "config_dir", "CONFIG_DIR")),
        machine_name=_required(args, "name", "VM_NAME"),
        credential=Credential(_required(args, "user", "ADMIN_USER"), _read_password(args)),
        disk_path=disk_path,
        template_path=template_path,
        host=_value(args, "host", "VM_HOST", "localhost") or "localhost",
        work_dir=Path(_value(args, "work_dir", "WORK_DIR", str(DEFAULT_WORK_DIR)) or DEFAULT_WORK_DIR),
        log_dir=Path(_value(args, "log_dir", "LOG_DIR", str(DEFAULT_LOG_DIR)) or DEFAULT_LOG_DIR),
        mac_address=mac,
        patch_server=patch_server,
        patch_target_group=target_group,
        extra_disk_sizes=parse_extra_disks(_value(args, "extra_disks", "EXTRA_DISKS")),
    )
