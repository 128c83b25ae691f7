"""Scoped mounting of a bound loop device.

Every guest-side step (autoexpand injection, prep cleanup, free-space zeroing)
works on a temporary mount that is always released, including on error:

    with mounted(device) as root:
        (root / "etc").is_dir()

Functions:
    - mount_device(): Mount a device node at a directory
    - unmount_path(): Unmount a mountpoint
    - mounted(): Context manager combining both around a temporary directory
"""

from __future__ import annotations

import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from img_shrinker.domain.models import LoopDevice
from img_shrinker.logging import LoggerFactory

from .commands import command_error, run_command
from .exceptions import MountError, UnmountFailedError


log = LoggerFactory.for_storage("mount")


def _validate_device_path(device_path: str) -> None:
    if not isinstance(device_path, str) or not device_path.startswith("/dev/"):
        raise ValueError(f"Invalid device path: {device_path}")
    if any(char in device_path for char in [";", "&", "|", "$", "`", "\n", "\r", " "]):
        raise ValueError(f"Device path contains invalid characters: {device_path}")


def mount_device(device_path: str, mountpoint: Path, options: Optional[str] = None) -> None:
    """Mount ``device_path`` at ``mountpoint``.

    Raises:
        ValueError: If the device path is invalid
        MountError: If mount fails
    """
    _validate_device_path(device_path)
    command = ["mount", device_path, str(mountpoint)]
    if options:
        command += ["-o", options]
    result = run_command(command)
    if result.returncode != 0:
        raise MountError(
            f"Failed to mount {device_path} to {mountpoint}: {command_error(result)}",
            device=device_path,
            mountpoint=str(mountpoint),
        )


def unmount_path(mountpoint: Path, device_path: str = "") -> None:
    """Unmount ``mountpoint`` if it is mounted.

    Raises:
        UnmountFailedError: If umount fails
    """
    if not os.path.ismount(mountpoint):
        return
    result = run_command(["umount", str(mountpoint)])
    if result.returncode != 0:
        raise UnmountFailedError(
            f"Failed to unmount {mountpoint}: {command_error(result)}",
            device=device_path,
            mountpoint=str(mountpoint),
        )


@contextmanager
def mounted(device: LoopDevice, options: Optional[str] = None) -> Generator[Path, None, None]:
    """Mount ``device`` on a fresh temporary directory for the block's duration.

    The filesystem is unmounted and the directory removed on every exit path.
    When the block itself raised, an unmount failure is logged rather than
    replacing the original error.
    """
    mountpoint = Path(tempfile.mkdtemp(prefix="img-shrinker-"))
    try:
        mount_device(device.node, mountpoint, options)
    except (MountError, ValueError):
        mountpoint.rmdir()
        raise
    log.debug(f"Mounted {device.node} at {mountpoint}")

    try:
        yield mountpoint
    except BaseException:
        try:
            unmount_path(mountpoint, device.node)
        except UnmountFailedError as error:
            log.error(str(error))
        else:
            mountpoint.rmdir()
        raise
    unmount_path(mountpoint, device.node)
    mountpoint.rmdir()
    log.debug(f"Unmounted {device.node} from {mountpoint}")
