"""The shrink pipeline.

Stages run strictly in order; each wraps one external tool and raises a
stage-specific ``ShrinkError`` on failure, which aborts the run:

    preconditions -> copy -> read partition table -> bind loop device
    -> inspect filesystem -> [autoexpand] -> [prep] -> check filesystem
    -> estimate minimum -> (skip when already minimal) -> shrink filesystem
    -> zero free space -> rewrite partition -> truncate -> [compress]
    -> unbind

The loop device is released on every exit path. If the autoexpand step
moved the guest's ``rc.local`` aside and a later shrink stage fails, the
original is restored before the device is released. Nothing is retried.
"""

from __future__ import annotations

import os
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from img_shrinker.config.settings import ShrinkConfig
from img_shrinker.domain.models import (
    LoopDevice,
    Partition,
    ShrinkPlan,
    ShrinkResult,
)
from img_shrinker.logging import LoggerFactory, log_variables, operation_context
from img_shrinker.storage import (
    compression,
    filesystem,
    image,
    loop,
    mount,
    partition_table,
)
from img_shrinker.storage.commands import REQUIRED_TOOLS, require_tools
from img_shrinker.storage.exceptions import (
    CompressError,
    ImageNotFoundError,
    NotPrivilegedError,
    ShrinkError,
)

from . import autoexpand, prep
from .autoexpand import BootScriptState
from .planner import plan_shrink

if TYPE_CHECKING:
    from loguru import Logger


class ShrinkPipeline:
    """Shrinks one disk image according to a ``ShrinkConfig``.

    Example:
        config = ShrinkConfig(image=Path("raspios.img"))
        result = ShrinkPipeline(config).run()
    """

    def __init__(self, config: ShrinkConfig, log: Optional[Logger] = None):
        self.config = config
        self.log = log or LoggerFactory.for_shrink()
        self.boot_state = BootScriptState()

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------

    def check_preconditions(self) -> None:
        """Fail early, before the image is touched.

        Raises:
            ImageNotFoundError: If the image is not a regular file
            NotPrivilegedError: If not running as root
            UnsupportedCompressionError: If the compressor is unknown
            MissingToolError: If a required command is not installed
        """
        if not self.config.image.is_file():
            raise ImageNotFoundError(str(self.config.image))
        if os.geteuid() != 0:
            raise NotPrivilegedError()
        tools = list(REQUIRED_TOOLS)
        if self.config.compression is not None:
            tools.append(compression.command_name(self.config.compression))
        require_tools(tools)

    def prepare_image(self) -> Path:
        """Path of the image to shrink, copying to the output path if one was given."""
        output = self.config.output
        if output is None:
            return self.config.image
        if self.config.compression is not None:
            output = compression.strip_extension(output, self.config.compression)
        return image.copy_image(self.config.image, output)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def run(self) -> ShrinkResult:
        """Run every stage and return what was done.

        Raises:
            ShrinkError: The first stage that failed, with its exit code
        """
        self.check_preconditions()
        target = self.prepare_image()

        with operation_context("shrink", image=str(target)) as log:
            self.log = log
            before_bytes = target.stat().st_size

            log.info("Gathering data")
            layout = partition_table.read_layout(target)
            partition = layout.target
            log_variables(
                log,
                before_size=image.human_size(before_bytes),
                parted_output=layout.machine_output,
                partition_number=partition.number,
                partition_start=partition.start,
                partition_type=partition.type.value,
                partition_filesystem=partition.filesystem,
                partition_size=partition.size_bytes,
            )

            with loop.bound_device(target, partition.start) as device:
                try:
                    plan = self._shrink(target, partition, device)
                    final_path = self._compress(target)
                except Exception as error:
                    self._rollback(device, error)
                    raise

            after_bytes = final_path.stat().st_size
            log_variables(log, after_size=image.human_size(after_bytes))
            result = ShrinkResult(
                image=final_path,
                before_bytes=before_bytes,
                after_bytes=after_bytes,
                plan=plan,
                autoexpand_enabled=self.boot_state.injected,
            )
            if result.shrunk:
                log.success(
                    f"Shrunk {final_path} from {image.human_size(before_bytes)} "
                    f"to {image.human_size(after_bytes)}"
                )
            else:
                log.success(
                    f"{final_path} was already minimal "
                    f"({image.human_size(after_bytes)})"
                )
            return result

    def _shrink(self, path: Path, partition: Partition, device: LoopDevice) -> ShrinkPlan:
        log = self.log
        size_info, tune2fs_output = filesystem.read_size_info(device)
        log_variables(
            log,
            tune2fs_output=tune2fs_output,
            current_size=size_info.block_count,
            block_size=size_info.block_size,
            filesystem_bytes=size_info.size_bytes,
        )

        self._maybe_enable_autoexpand(partition, device)

        if self.config.prep or self.config.prep_openwb:
            prep.run_prep(
                device,
                sysprep_enabled=self.config.prep,
                openwb_enabled=self.config.prep_openwb,
            )

        filesystem.check_consistency(device, self.config.advanced_repair)

        minimum = filesystem.estimate_minimum(device)
        log_variables(log, current_size=size_info.block_count, min_size=minimum)
        if minimum > size_info.block_count:
            log.warning(
                f"resize2fs estimates {minimum} blocks, more than the current "
                f"{size_info.block_count}; treating the filesystem as minimal"
            )
            minimum = size_info.block_count
        size_info = replace(size_info, minimum_blocks=minimum)

        plan = plan_shrink(size_info.block_count, size_info.minimum_blocks)
        if plan.is_noop:
            log.info("Filesystem already shrunk to smallest size. Skipping filesystem shrinking")
            return plan
        log_variables(log, extra_space=plan.headroom, target_size=plan.target_blocks)

        filesystem.resize(device, plan.target_blocks)

        log.info("Zeroing any free space left")
        with mount.mounted(device) as root:
            zeroed = image.zero_free_space(root)
        log.info(f"Zeroed {image.human_size(zeroed)}")

        log.info("Shrinking partition")
        new_end = plan.partition_end(partition.start, size_info.block_size)
        log_variables(
            log,
            partition_new_size=plan.target_blocks * size_info.block_size,
            new_partition_end=new_end,
        )
        partition_table.rewrite(path, partition, new_end)

        end_result = partition_table.read_image_end(path, partition)
        log_variables(log, end_result=end_result)
        image.truncate_image(path, end_result)
        return plan

    def _maybe_enable_autoexpand(self, partition: Partition, device: LoopDevice) -> None:
        if partition.is_logical:
            self.log.warning("Autoexpanding is not supported for logical partitions")
        elif self.config.skip_autoexpand:
            self.log.info("Skipping autoexpanding process...")
        else:
            self.boot_state = autoexpand.enable_autoexpand(device, self.boot_state)

    def _compress(self, path: Path) -> Path:
        spec = self.config.compression
        if spec is None:
            return path
        return compression.compress(path, spec)

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def _rollback(self, device: LoopDevice, error: Exception) -> None:
        """Undo guest changes after a failed shrink stage.

        A failed compression leaves a valid shrunk image, so the autoexpand
        script is kept in that case.
        """
        stage = getattr(error, "stage", type(error).__name__)
        self.log.debug(f"Rolling back after failure in {stage}")
        if isinstance(error, CompressError):
            self.log.warning(f"Image {device.image} left shrunk but uncompressed")
            return
        if not self.boot_state.backup_created:
            return
        try:
            with mount.mounted(device) as root:
                autoexpand.restore_backup(root)
        except (ShrinkError, OSError) as rollback_error:
            self.log.error(
                f"Could not restore /etc/rc.local ({rollback_error}); "
                "the original is kept as /etc/rc.local.bak"
            )
