"""
Pytest configuration and shared fixtures for img-shrinker tests.

This module provides canned tool output (parted, tune2fs, resize2fs) and
small helpers used across all test modules.
"""

from pathlib import Path
from typing import List
from unittest.mock import Mock

import pytest

from img_shrinker.domain.models import LoopDevice, Partition, PartitionType
from img_shrinker.logging import logger


# ==============================================================================
# Command Result Helpers
# ==============================================================================


def completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> Mock:
    """A stand-in for subprocess.CompletedProcess as returned by run_command."""
    return Mock(returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def ok():
    """Factory fixture for successful command results."""

    def _ok(stdout: str = "") -> Mock:
        return completed(0, stdout=stdout)

    return _ok


@pytest.fixture
def failed():
    """Factory fixture for failed command results."""

    def _failed(returncode: int = 1, stderr: str = "error") -> Mock:
        return completed(returncode, stderr=stderr)

    return _failed


# ==============================================================================
# parted Output Fixtures
# ==============================================================================


@pytest.fixture
def parted_machine_output() -> str:
    """``parted -ms <image> unit B print`` for a two-partition Raspberry Pi image."""
    return """BYT;
/tmp/pi.img:3904897024B:file:512:512:msdos::;
1:4194304B:272629759B:268435456B:fat32::lba;
2:272629760B:3904897023B:3632267264B:ext4::;
"""


@pytest.fixture
def parted_human_output() -> str:
    """``parted -s <image> unit B print`` for the same image."""
    return """Model:  (file)
Disk /tmp/pi.img: 3904897024B
Sector size (logical/physical): 512B/512B
Partition Table: msdos
Disk Flags:

Number  Start       End          Size         Type     File system  Flags
 1      4194304B    272629759B   268435456B   primary  fat32        lba
 2      272629760B  3904897023B  3632267264B  primary  ext4

"""


@pytest.fixture
def parted_logical_machine_output() -> str:
    return """BYT;
/tmp/noobs.img:3904897024B:file:512:512:msdos::;
1:4194304B:272629759B:268435456B:fat32::lba;
2:272629760B:3904897023B:3632267264B:::lba;
5:273678336B:3904897023B:3631218688B:ext4::;
"""


@pytest.fixture
def parted_logical_human_output() -> str:
    return """Model:  (file)
Disk /tmp/noobs.img: 3904897024B
Sector size (logical/physical): 512B/512B
Partition Table: msdos
Disk Flags:

Number  Start       End          Size         Type      File system  Flags
 1      4194304B    272629759B   268435456B   primary   fat32        lba
 2      272629760B  3904897023B  3632267264B  extended               lba
 5      273678336B  3904897023B  3631218688B  logical   ext4

"""


@pytest.fixture
def parted_free_output() -> str:
    """``parted -ms <image> unit B print free`` after shrinking partition 2."""
    return """BYT;
/tmp/pi.img:3904897024B:file:512:512:msdos::;
1:512B:4194303B:4193792B:free;
1:4194304B:272629759B:268435456B:fat32::lba;
2:272629760B:907509759B:634880000B:ext4::;
1:907509760B:3904897023B:2997387264B:free;
"""


# ==============================================================================
# e2fsprogs Output Fixtures
# ==============================================================================


@pytest.fixture
def tune2fs_output() -> str:
    """Abridged ``tune2fs -l`` output for a 200000 block filesystem."""
    return """tune2fs 1.47.0 (5-Feb-2023)
Filesystem volume name:   rootfs
Last mounted on:          /
Filesystem magic number:  0xEF53
Filesystem revision #:    1 (dynamic)
Filesystem features:      has_journal ext_attr resize_inode dir_index filetype extent flex_bg sparse_super large_file huge_file dir_nlink extra_isize metadata_csum
Inode count:              50000
Block count:              200000
Reserved block count:     10000
Free blocks:              48000
Free inodes:              12000
First block:              0
Block size:               4096
Fragment size:            4096
"""


@pytest.fixture
def resize2fs_minimum_output() -> str:
    return "resize2fs 1.47.0 (5-Feb-2023)\nEstimated minimum size of the filesystem: 150000\n"


# ==============================================================================
# Domain Fixtures
# ==============================================================================


@pytest.fixture
def image_path() -> Path:
    return Path("/tmp/pi.img")


@pytest.fixture
def loop_device(image_path) -> LoopDevice:
    """The image's root partition bound to /dev/loop7."""
    return LoopDevice(node="/dev/loop7", image=image_path, offset=272629760)


@pytest.fixture
def root_partition() -> Partition:
    return Partition(
        number=2,
        start=272629760,
        end=3904897023,
        type=PartitionType.PRIMARY,
        filesystem="ext4",
    )


# ==============================================================================
# Logging Fixtures
# ==============================================================================


@pytest.fixture
def log_records() -> List[dict]:
    """Collect loguru records emitted during the test."""
    records: List[dict] = []

    def sink(message):
        records.append(message.record)

    handler_id = logger.add(sink, level="DEBUG", enqueue=False)
    yield records
    logger.remove(handler_id)
