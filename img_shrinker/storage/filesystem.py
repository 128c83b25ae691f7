"""ext2/3/4 filesystem operations on a bound loop device.

Inspection:
    read_size_info(): Block size and block count from ``tune2fs -l``
    estimate_minimum(): Minimum block count from ``resize2fs -P``

Consistency Check:
    e2fsck is run in escalating repair tiers, each at most once and in order:

    1. PREEN                 ``e2fsck -pf``      automatic safe fixes
    2. FORCE_YES             ``e2fsck -y``       answer yes to every question
    3. ALTERNATE_SUPERBLOCK  ``e2fsck -fy -b 32768``  only with advanced repair

    e2fsck exit codes below 4 mean the filesystem is clean, or was fixed and
    is clean now. Anything else after the last permitted tier is fatal.

Resize:
    resize(): ``resize2fs -p <device> <blocks>``, only on an unmounted device
"""

from __future__ import annotations

import re

from img_shrinker.domain.models import CheckTier, FilesystemSizeInfo, LoopDevice
from img_shrinker.logging import LoggerFactory

from .commands import command_error, run_command
from .exceptions import (
    FilesystemInspectError,
    FilesystemUnrecoverableError,
    MinimumEstimateError,
    ResizeError,
)


log = LoggerFactory.for_storage("e2fsprogs")

E2FSCK_OK_LIMIT = 4
ALTERNATE_SUPERBLOCK = 32768

_CHECK_COMMANDS = {
    CheckTier.PREEN: ["e2fsck", "-pf"],
    CheckTier.FORCE_YES: ["e2fsck", "-y"],
    CheckTier.ALTERNATE_SUPERBLOCK: ["e2fsck", "-fy", "-b", str(ALTERNATE_SUPERBLOCK)],
}


def parse_tune2fs(output: str) -> FilesystemSizeInfo:
    """Extract block geometry from ``tune2fs -l`` output.

    Raises:
        ValueError: If either field is missing
    """
    count_match = re.search(r"^Block count:\s*(\d+)", output, re.MULTILINE)
    size_match = re.search(r"^Block size:\s*(\d+)", output, re.MULTILINE)
    if not count_match or not size_match:
        raise ValueError("Block count or block size missing from tune2fs output")
    return FilesystemSizeInfo(
        block_size=int(size_match.group(1)),
        block_count=int(count_match.group(1)),
    )


def parse_minimum(output: str) -> int:
    """Extract the estimate from ``resize2fs -P`` output.

    Example:
        'Estimated minimum size of the filesystem: 251648'
    """
    match = re.search(r"minimum size of the filesystem:\s*(\d+)", output)
    if not match:
        raise ValueError("Estimated minimum size missing from resize2fs output")
    return int(match.group(1))


def read_size_info(device: LoopDevice) -> tuple[FilesystemSizeInfo, str]:
    """Read block size and block count from the superblock.

    Returns:
        The parsed geometry and the raw tune2fs output (for the debug log)

    Raises:
        FilesystemInspectError: If tune2fs fails; usually not an ext filesystem
    """
    result = run_command(["tune2fs", "-l", device.node], log_output=False)
    if result.returncode != 0:
        raise FilesystemInspectError(
            f"tune2fs failed. Unable to shrink this type of image "
            f"({command_error(result)})",
            device=device.node,
            output=result.stdout,
        )
    try:
        return parse_tune2fs(result.stdout), result.stdout
    except ValueError as error:
        raise FilesystemInspectError(
            str(error), device=device.node, output=result.stdout
        ) from error


def estimate_minimum(device: LoopDevice) -> int:
    """Ask resize2fs for the minimum block count the filesystem can shrink to.

    Only meaningful after check_consistency() succeeded.

    Raises:
        MinimumEstimateError: If resize2fs fails or prints no estimate
    """
    result = run_command(["resize2fs", "-P", device.node])
    if result.returncode != 0:
        raise MinimumEstimateError(
            f"resize2fs failed with rc {result.returncode}: {command_error(result)}",
            device=device.node,
        )
    try:
        return parse_minimum(result.stdout)
    except ValueError as error:
        raise MinimumEstimateError(str(error), device=device.node) from error


def permitted_tiers(advanced_repair: bool) -> list[CheckTier]:
    tiers = [CheckTier.PREEN, CheckTier.FORCE_YES]
    if advanced_repair:
        tiers.append(CheckTier.ALTERNATE_SUPERBLOCK)
    return tiers


def check_consistency(device: LoopDevice, advanced_repair: bool = False) -> CheckTier:
    """Check and, if needed, repair the filesystem.

    Returns:
        The tier that left the filesystem clean

    Raises:
        FilesystemUnrecoverableError: If every permitted tier still fails
    """
    log.info("Checking filesystem")
    attempted: list[int] = []
    returncode = 0
    for tier in permitted_tiers(advanced_repair):
        if tier is CheckTier.FORCE_YES:
            log.info("Filesystem error detected!")
            log.info("Trying to recover corrupted filesystem")
        elif tier is CheckTier.ALTERNATE_SUPERBLOCK:
            log.info("Trying to recover corrupted filesystem - Phase 2")

        attempted.append(int(tier))
        result = run_command([*_CHECK_COMMANDS[tier], device.node])
        returncode = result.returncode
        log.debug(f"e2fsck tier {tier.name} returned {returncode}")
        if 0 <= returncode < E2FSCK_OK_LIMIT:
            return tier

    raise FilesystemUnrecoverableError(device.node, returncode, attempted)


def resize(device: LoopDevice, target_blocks: int) -> None:
    """Resize the filesystem on ``device`` to ``target_blocks``.

    Raises:
        ResizeError: If resize2fs fails
    """
    log.info("Shrinking filesystem")
    result = run_command(["resize2fs", "-p", device.node, str(target_blocks)])
    if result.returncode != 0:
        raise ResizeError(
            f"resize2fs failed with rc {result.returncode}: {command_error(result)}",
            device=device.node,
            returncode=result.returncode,
        )
