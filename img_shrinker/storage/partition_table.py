"""Partition table operations on disk images, using parted.

This module handles:
- Reading the partition table (``parted -ms <image> unit B print``)
- Choosing the shrink target (the last partition in the table)
- Rewriting the target entry with a new end (delete, then recreate)
- Reading back where the image should now end (``print free``)

All parted output parsing lives here; callers only see ``Partition`` records
and byte offsets.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from img_shrinker.domain.models import Partition, PartitionType
from img_shrinker.logging import LoggerFactory

from .commands import command_error, run_command
from .exceptions import (
    PartitionCreateError,
    PartitionDeleteError,
    PartitionReadbackError,
    PartitionReadError,
)


log = LoggerFactory.for_storage("parted")


@dataclass(frozen=True)
class PartitionLayout:
    """Partition entries plus the raw parted output they were parsed from."""

    partitions: list[Partition]
    machine_output: str

    @property
    def target(self) -> Partition:
        return select_target(self.partitions)


def _parse_bytes(value: str) -> int:
    value = value.strip()
    if value.endswith("B"):
        value = value[:-1]
    return int(value)


def _machine_records(output: str) -> list[list[str]]:
    """Split ``parted -m`` output into field lists for numbered records.

    The ``BYT;`` header and the disk summary line are skipped.
    """
    records = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        fields = line.rstrip(";").split(":")
        if fields[0].isdigit() and len(fields) >= 4:
            records.append(fields)
    return records


def _is_free(fields: list[str]) -> bool:
    return fields[-1].strip() == "free"


def parse_partitions(output: str) -> list[Partition]:
    """Parse ``parted -ms unit B print`` output into partitions (all primary)."""
    partitions = []
    for fields in _machine_records(output):
        if _is_free(fields):
            continue
        filesystem = fields[4] if len(fields) > 4 and fields[4] else None
        partitions.append(
            Partition(
                number=int(fields[0]),
                start=_parse_bytes(fields[1]),
                end=_parse_bytes(fields[2]),
                filesystem=filesystem,
            )
        )
    return partitions


def parse_logical_starts(output: str) -> set[int]:
    """Start offsets flagged ``logical`` in human-readable ``parted print`` output.

    Example line (msdos label):
        ' 5      4194304B   272629759B  268435456B  logical   fat32        lba'
    """
    starts = set()
    for line in output.splitlines():
        columns = line.split()
        if len(columns) < 2 or not columns[0].isdigit():
            continue
        if "logical" in columns:
            starts.add(_parse_bytes(columns[1]))
    return starts


def select_target(partitions: list[Partition]) -> Partition:
    """The shrink target is the last partition in the table."""
    if not partitions:
        raise PartitionReadError("No partitions found in partition table")
    return partitions[-1]


def read_layout(image_path: Path) -> PartitionLayout:
    """Read the partition table of ``image_path``.

    Raises:
        PartitionReadError: If parted fails or the table has no partitions
    """
    result = run_command(["parted", "-ms", str(image_path), "unit", "B", "print"])
    if result.returncode != 0:
        raise PartitionReadError(
            f"parted failed with rc {result.returncode}: {command_error(result)}. "
            f"Possibly invalid image. Run 'parted {image_path} unit B print' "
            "manually to investigate",
            image=str(image_path),
            returncode=result.returncode,
        )
    partitions = parse_partitions(result.stdout)
    if not partitions:
        raise PartitionReadError(
            f"No partitions found in {image_path}", image=str(image_path)
        )

    human = run_command(
        ["parted", "-s", str(image_path), "unit", "B", "print"], log_output=False
    )
    if human.returncode != 0:
        raise PartitionReadError(
            f"parted failed with rc {human.returncode}: {command_error(human)}",
            image=str(image_path),
            returncode=human.returncode,
        )
    logical_starts = parse_logical_starts(human.stdout)
    partitions = [
        Partition(
            number=partition.number,
            start=partition.start,
            end=partition.end,
            type=(
                PartitionType.LOGICAL
                if partition.start in logical_starts
                else PartitionType.PRIMARY
            ),
            filesystem=partition.filesystem,
        )
        for partition in partitions
    ]
    return PartitionLayout(partitions=partitions, machine_output=result.stdout)


def rewrite(image_path: Path, partition: Partition, new_end: int) -> None:
    """Replace ``partition``'s entry with one ending at ``new_end``.

    parted has no safe non-interactive shrink, so the entry is removed and
    recreated at exactly the same start offset with minimal alignment, which
    keeps parted from nudging the start and moving the filesystem.

    Raises:
        PartitionDeleteError: If removing the entry fails
        PartitionCreateError: If recreating the entry fails
    """
    if new_end <= partition.start:
        raise PartitionCreateError(
            f"New end {new_end} is not past partition start {partition.start}",
            image=str(image_path),
        )

    result = run_command(["parted", "-s", str(image_path), "rm", str(partition.number)])
    if result.returncode != 0:
        raise PartitionDeleteError(
            f"parted failed with rc {result.returncode}: {command_error(result)}",
            image=str(image_path),
            returncode=result.returncode,
        )

    result = run_command(
        [
            "parted",
            "-s",
            "-a",
            "minimal",
            str(image_path),
            "unit",
            "B",
            "mkpart",
            partition.type.value,
            str(partition.start),
            str(new_end),
        ]
    )
    if result.returncode != 0:
        raise PartitionCreateError(
            f"parted failed with rc {result.returncode}: {command_error(result)}",
            image=str(image_path),
            returncode=result.returncode,
        )
    log.debug(
        f"Partition {partition.number} recreated as {partition.type.value} "
        f"{partition.start}B-{new_end}B"
    )


def read_image_end(image_path: Path, partition: Partition) -> int:
    """Byte length the image should be truncated to after a rewrite.

    Read back from the table rather than computed, so the file length always
    agrees with what parted wrote. The image ends where the trailing free
    space after the last partition begins, or right after the last partition
    when there is no trailing free space.

    Raises:
        PartitionReadbackError: If parted fails, or the rewritten partition is
            missing or no longer starts where it did
    """
    result = run_command(
        ["parted", "-ms", str(image_path), "unit", "B", "print", "free"]
    )
    if result.returncode != 0:
        raise PartitionReadbackError(
            f"parted failed with rc {result.returncode}: {command_error(result)}",
            image=str(image_path),
            returncode=result.returncode,
        )

    records = _machine_records(result.stdout)
    rewritten = [
        fields
        for fields in records
        if not _is_free(fields) and int(fields[0]) == partition.number
    ]
    if not rewritten:
        raise PartitionReadbackError(
            f"Partition {partition.number} missing after rewrite", image=str(image_path)
        )
    if _parse_bytes(rewritten[-1][1]) != partition.start:
        raise PartitionReadbackError(
            f"Partition {partition.number} moved from {partition.start}B "
            f"to {rewritten[-1][1]} during rewrite",
            image=str(image_path),
        )

    last = records[-1]
    if _is_free(last):
        return _parse_bytes(last[1])
    return _parse_bytes(last[2]) + 1
