"""Domain models for disk image shrinking.

This package contains the typed records each external tool wrapper returns,
so that output parsing stays at one translation point per tool.
"""

from __future__ import annotations

from .models import (
    CheckTier,
    CompressionSpec,
    ExitCode,
    FilesystemSizeInfo,
    LoopDevice,
    Partition,
    PartitionType,
    ShrinkPlan,
    ShrinkResult,
)


__all__ = [
    "CheckTier",
    "CompressionSpec",
    "ExitCode",
    "FilesystemSizeInfo",
    "LoopDevice",
    "Partition",
    "PartitionType",
    "ShrinkPlan",
    "ShrinkResult",
]
