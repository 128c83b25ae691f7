"""Loop device binding for disk images.

The image is bound from the target partition's start offset through the end
of the file (no size limit), so e2fsprogs see the partition's filesystem at
offset zero of the loop device.

Operations:
    - bind(): Attach the image tail to the first free loop device
    - unbind(): Detach a loop device; a no-op when nothing is attached
    - is_bound(): Ask losetup whether a loop device is still attached
"""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from img_shrinker.domain.models import LoopDevice
from img_shrinker.logging import LoggerFactory

from .commands import command_error, run_command
from .exceptions import BindError


log = LoggerFactory.for_storage("loop")


def bind(image_path: Path, offset: int) -> LoopDevice:
    """Attach ``image_path`` from byte ``offset`` to a free loop device.

    Raises:
        BindError: If losetup fails or does not report a device node
    """
    result = run_command(
        ["losetup", "-f", "--show", "-o", str(offset), str(image_path)]
    )
    if result.returncode != 0:
        raise BindError(
            f"losetup failed with rc {result.returncode}: {command_error(result)}"
        )
    node = result.stdout.strip()
    if not node.startswith("/dev/"):
        raise BindError(f"losetup did not report a loop device (got {node!r})")
    log.debug(f"Bound {image_path} at offset {offset} to {node}")
    return LoopDevice(node=node, image=Path(image_path), offset=offset)


def is_bound(device: LoopDevice) -> bool:
    result = run_command(["losetup", device.node], log_output=False)
    return result.returncode == 0


def unbind(device: Optional[LoopDevice]) -> None:
    """Detach ``device``. Safe to call repeatedly or with ``None``.

    Raises:
        BindError: If the device is attached and losetup cannot detach it
    """
    if device is None:
        return
    if not is_bound(device):
        log.debug(f"{device.node} is not attached, nothing to detach")
        return
    result = run_command(["losetup", "-d", device.node])
    if result.returncode != 0:
        raise BindError(
            f"Failed to detach {device.node}: {command_error(result)}",
            device=device.node,
        )
    log.debug(f"Detached {device.node}")


@contextmanager
def bound_device(image_path: Path, offset: int) -> Generator[LoopDevice, None, None]:
    """Context manager that always detaches the loop device on exit."""
    device = bind(image_path, offset)
    try:
        yield device
    except BaseException:
        # Keep the original failure; a detach error here is only reported.
        try:
            unbind(device)
        except BindError as error:
            log.error(f"Could not release {device.node}: {error}")
        raise
    unbind(device)
