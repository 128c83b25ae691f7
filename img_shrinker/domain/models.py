"""Domain model for disk image shrinking.

Type-safe records returned by the parsing boundary of each external tool
(parted, tune2fs, resize2fs, losetup) and consumed by the pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from pathlib import Path


# ==============================================================================
# Exit Codes
# ==============================================================================


class ExitCode(IntEnum):
    """Process exit codes, one per failing stage."""

    OK = 0
    USAGE = 1
    NOT_A_FILE = 2
    NOT_ROOT = 3
    MISSING_TOOL = 4
    COPY_FAILED = 5
    PARTED_READ_FAILED = 6
    TUNE2FS_FAILED = 7
    BIND_FAILED = 8
    FILESYSTEM_UNRECOVERABLE = 9
    MINIMUM_ESTIMATE_FAILED = 10
    MOUNT_FAILED = 11
    RESIZE_FAILED = 12
    PARTITION_DELETE_FAILED = 13
    PARTITION_CREATE_FAILED = 14
    PARTITION_READBACK_FAILED = 15
    TRUNCATE_FAILED = 16
    UNSUPPORTED_COMPRESSION = 17
    PARALLEL_COMPRESS_FAILED = 18
    COMPRESS_FAILED = 19
    GUEST_FILES_FAILED = 20


# ==============================================================================
# Image and Device Domain
# ==============================================================================


@dataclass(frozen=True)
class LoopDevice:
    """A loop device bound to the tail of an image, starting at ``offset``."""

    node: str  # e.g., "/dev/loop3"
    image: Path
    offset: int

    def __str__(self) -> str:
        return self.node


# ==============================================================================
# Partition Domain
# ==============================================================================


class PartitionType(Enum):
    PRIMARY = "primary"
    LOGICAL = "logical"


@dataclass(frozen=True)
class Partition:
    """One entry of the image's partition table (offsets in bytes)."""

    number: int
    start: int
    end: int
    type: PartitionType = PartitionType.PRIMARY
    filesystem: str | None = None

    @property
    def size_bytes(self) -> int:
        return self.end - self.start + 1

    @property
    def is_logical(self) -> bool:
        return self.type is PartitionType.LOGICAL


# ==============================================================================
# Filesystem Sizing Domain
# ==============================================================================


@dataclass(frozen=True)
class FilesystemSizeInfo:
    """Block geometry of an ext filesystem.

    ``minimum_blocks`` stays ``None`` until resize2fs has estimated it, which
    may only happen after the filesystem passed a consistency check.
    """

    block_size: int
    block_count: int
    minimum_blocks: int | None = None

    @property
    def size_bytes(self) -> int:
        return self.block_size * self.block_count


@dataclass(frozen=True)
class ShrinkPlan:
    """Target filesystem size in blocks, with the margin that was added."""

    current_blocks: int
    minimum_blocks: int
    target_blocks: int
    margin_blocks: int

    @property
    def headroom(self) -> int:
        return self.current_blocks - self.minimum_blocks

    @property
    def is_noop(self) -> bool:
        return self.current_blocks == self.minimum_blocks

    def partition_end(self, partition_start: int, block_size: int) -> int:
        """Byte offset the partition entry should end at after the shrink."""
        return partition_start + self.target_blocks * block_size


# ==============================================================================
# Compression Domain
# ==============================================================================


@dataclass(frozen=True)
class CompressionSpec:
    """A resolved compressor invocation for the final image."""

    tool: str  # "gzip" or "xz"
    parallel: bool = False
    options: str | None = None  # Override for all tool options
    verbose: bool = False


# ==============================================================================
# Consistency Check Domain
# ==============================================================================


class CheckTier(IntEnum):
    """Escalating e2fsck repair tiers, attempted strictly in order."""

    PREEN = 1
    FORCE_YES = 2
    ALTERNATE_SUPERBLOCK = 3


# ==============================================================================
# Result
# ==============================================================================


@dataclass(frozen=True)
class ShrinkResult:
    """Outcome of a successful pipeline run."""

    image: Path
    before_bytes: int
    after_bytes: int
    plan: ShrinkPlan | None
    autoexpand_enabled: bool = False

    @property
    def shrunk(self) -> bool:
        return self.plan is not None and not self.plan.is_noop
