"""Disk image mounting with guaranteed dismount."""

from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional

from vmtemplate.constants import GUESTMOUNT_EXIT_POLL_SECONDS, GUESTMOUNT_EXIT_TIMEOUT
from vmtemplate.exceptions import TemplateBuildError
from vmtemplate.models import BuildSettings
from vmtemplate.utils import ensure_directory, log, run
from vmtemplate.waiter import PollingWaiter


@contextmanager
def mounted_disk(hypervisor, disk_path: Path) -> Iterator[Path]:
    """Mount ``disk_path`` for the duration of the block and always dismount it.

    A mount failure propagates before the block runs, so nothing is left to
    dismount in that case.
    """
    mount_point = hypervisor.mount_disk(disk_path)
    try:
        yield mount_point
    finally:
        hypervisor.dismount_disk(disk_path)


class GuestMounter:
    """Mount disk images on the local host with libguestfs ``guestmount``.

    Only one mount per disk file is allowed at a time. ``guestunmount`` only
    detaches the FUSE filesystem; the guestmount worker then flushes its
    changes into the image and exits. :meth:`dismount` returns once that
    worker is gone, so the image is complete when the next step opens it.
    """

    def __init__(
        self,
        scratch_dir: Optional[Path] = None,
        verbose: bool = False,
        waiter: Optional[PollingWaiter] = None,
        exit_timeout: float = GUESTMOUNT_EXIT_TIMEOUT,
    ) -> None:
        self.scratch_dir = scratch_dir
        self.verbose = verbose
        self.waiter = waiter or PollingWaiter(BuildSettings(verbose=verbose))
        self.exit_timeout = exit_timeout
        self._mounts: Dict[Path, Path] = {}

    def is_mounted(self, disk_path: Path) -> bool:
        return disk_path.resolve() in self._mounts

    @staticmethod
    def pid_file(mount_point: Path) -> Path:
        # beside the mount point, never inside it
        return mount_point.with_name(f"{mount_point.name}.pid")

    def mount(self, disk_path: Path) -> Path:
        key = disk_path.resolve()
        if key in self._mounts:
            raise TemplateBuildError(f"Disk {disk_path} is already mounted at {self._mounts[key]}")
        if not disk_path.exists():
            raise TemplateBuildError(f"Cannot mount {disk_path}: file not found")
        if self.scratch_dir is not None:
            ensure_directory(self.scratch_dir)
        mount_point = Path(tempfile.mkdtemp(prefix="mount-", dir=self.scratch_dir))
        pid_file = self.pid_file(mount_point)
        cmd = ["guestmount", "--pid-file", str(pid_file), "-a", str(disk_path), "-i", "--rw", str(mount_point)]
        try:
            run(cmd, verbose=self.verbose, capture_output=True)
        except (subprocess.CalledProcessError, FileNotFoundError) as exc:
            shutil.rmtree(mount_point, ignore_errors=True)
            pid_file.unlink(missing_ok=True)
            detail = getattr(exc, "stderr", None) or str(exc)
            raise TemplateBuildError(f"Failed to mount {disk_path}: {detail.strip()}") from exc
        self._mounts[key] = mount_point
        log("INFO", f"Mounted {disk_path} at {mount_point}")
        return mount_point

    def dismount(self, disk_path: Path) -> None:
        key = disk_path.resolve()
        mount_point = self._mounts.get(key)
        if mount_point is None:
            raise TemplateBuildError(f"Disk {disk_path} is not mounted")
        try:
            # a FUSE mount can stay busy for a moment after the last file closes
            run(["guestunmount", "--retry=5", str(mount_point)], verbose=self.verbose, capture_output=True)
        except (subprocess.CalledProcessError, FileNotFoundError) as exc:
            detail = getattr(exc, "stderr", None) or str(exc)
            raise TemplateBuildError(f"Failed to dismount {disk_path}: {detail.strip()}") from exc
        self._wait_for_worker(disk_path, self.pid_file(mount_point))
        del self._mounts[key]
        try:
            mount_point.rmdir()
        except OSError:
            log("DEBUG", f"Left mount directory {mount_point} in place", verbose=self.verbose)
        log("INFO", f"Dismounted {disk_path}")

    def _wait_for_worker(self, disk_path: Path, pid_file: Path) -> None:
        try:
            pid = int(pid_file.read_text().strip())
        except (OSError, ValueError):
            log("WARN", f"No guestmount pid recorded for {disk_path}; not waiting for write-back")
            return
        outcome = self.waiter.wait_until(
            lambda: not process_running(pid),
            GUESTMOUNT_EXIT_POLL_SECONDS,
            self.exit_timeout,
            description=f"guestmount worker {pid} exit",
        )
        if not outcome:
            raise TemplateBuildError(
                f"guestmount worker {pid} for {disk_path} still running {int(self.exit_timeout)}s after unmount"
            )
        pid_file.unlink(missing_ok=True)
        log("DEBUG", f"guestmount worker {pid} exited", verbose=self.verbose)


def process_running(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
