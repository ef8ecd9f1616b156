"""Utility functions for vm-template-builder."""

from __future__ import annotations

import os
import re
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from vmtemplate.constants import (
    _LOG_VERBOSE,
    DISK_FORMATS,
    DISK_SIZE_RE,
    MAC_ADDRESS_RE,
    TRUTHY,
)
from vmtemplate.exceptions import ConfigError


def log(level: str, message: str, verbose: Optional[bool] = None) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
    if verbose is None:
        verbose = _LOG_VERBOSE
    if level == "DEBUG" and not verbose:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ConfigError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ConfigError(f"{name} must be <= {max_val} (got {value})")
    return value


def validate_disk_size(raw: str) -> str:
    if not DISK_SIZE_RE.match(raw):
        raise ConfigError(
            f"Invalid disk size '{raw}'. Use a number with optional suffix: K, M, G, T (e.g. '20G')"
        )
    return raw


def normalize_mac(raw: str) -> str:
    """Accept aa:bb:.., aa-bb-.. or aabb.. and return the lower-case colon form."""
    compact = re.sub(r"[:\-.]", "", raw.strip()).lower()
    if len(compact) == 12:
        candidate = ":".join(compact[i : i + 2] for i in range(0, 12, 2))
        if MAC_ADDRESS_RE.match(candidate):
            return candidate
    raise ConfigError(f"Invalid MAC address '{raw}'")


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def disk_format(path: Path) -> str:
    """qemu-img format name for a disk file, from its suffix."""
    fmt = DISK_FORMATS.get(path.suffix.lower())
    if fmt is None:
        supported = ", ".join(sorted(DISK_FORMATS))
        raise ConfigError(f"Unsupported disk file '{path.name}' (expected one of: {supported})")
    return fmt


def drive_identifier(index: int, prefix: str = "sd") -> str:
    """Return the index-th disk target name: 0 -> sda, 25 -> sdz, 26 -> sdaa."""
    if index < 0:
        raise ValueError("index must be >= 0")
    letters = ""
    index += 1
    while index:
        index, rem = divmod(index - 1, 26)
        letters = chr(ord("a") + rem) + letters
    return prefix + letters


def is_share_path(path: str) -> bool:
    r"""True for ``\\server\share`` or ``//server/share`` paths, which a Linux builder cannot open."""
    return path.startswith("\\\\") or path.startswith("//")


def translate_path(path: Path, prefixes: Dict[str, str]) -> Path:
    """Rewrite ``path`` through the longest matching builder prefix -> host prefix entry.

    Paths under no configured prefix are returned unchanged.
    """
    best: Optional[Tuple[int, Path]] = None
    for local, remote in prefixes.items():
        try:
            rest = path.relative_to(local)
        except ValueError:
            continue
        depth = len(Path(local).parts)
        if best is None or depth > best[0]:
            best = (depth, Path(remote) / rest)
    return path if best is None else best[1]


def resolve_case_insensitive(root: Path, relative: str) -> Optional[Path]:
    """Find ``relative`` under ``root`` ignoring case; NTFS names keep their case on Linux mounts."""
    current = root
    for part in Path(relative).parts:
        candidate = current / part
        if candidate.exists() or candidate.is_symlink():
            current = candidate
            continue
        if not current.is_dir():
            return None
        lowered = part.lower()
        match = None
        for entry in current.iterdir():
            if entry.name.lower() == lowered:
                match = entry
                break
        if match is None:
            return None
        current = match
    return current


def collect_logs(source_dir: Path, log_dir: Path, suffix: str, pattern: str = "*.log", move: bool = False) -> List[Path]:
    """Copy (or move) log files into log_dir, renaming ``name.log`` to ``name-<suffix>.log``."""
    if not source_dir.is_dir():
        return []
    ensure_directory(log_dir)
    collected = []
    for item in sorted(source_dir.glob(pattern)):
        if not item.is_file():
            continue
        destination = log_dir / f"{item.stem}-{suffix}{item.suffix}"
        shutil.copy2(item, destination)
        if move:
            item.unlink()
        collected.append(destination)
    return collected


def run(cmd: List[str], check: bool = True, verbose: Optional[bool] = None, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}", verbose=verbose)
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
