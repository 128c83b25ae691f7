"""Tests for storage/filesystem.py - tune2fs, e2fsck and resize2fs wrappers."""

from unittest.mock import call, patch

import pytest

from img_shrinker.domain.models import CheckTier
from img_shrinker.storage import filesystem
from img_shrinker.storage.exceptions import (
    FilesystemInspectError,
    FilesystemUnrecoverableError,
    MinimumEstimateError,
    ResizeError,
)


PREEN = ["e2fsck", "-pf", "/dev/loop7"]
FORCE_YES = ["e2fsck", "-y", "/dev/loop7"]
ALT_SUPERBLOCK = ["e2fsck", "-fy", "-b", "32768", "/dev/loop7"]


class TestParseTune2fs:
    def test_block_geometry(self, tune2fs_output):
        info = filesystem.parse_tune2fs(tune2fs_output)

        assert info.block_count == 200000
        assert info.block_size == 4096
        assert info.minimum_blocks is None
        assert info.size_bytes == 200000 * 4096

    def test_reserved_block_count_is_not_block_count(self):
        """Test only the line starting with 'Block count' is used."""
        output = "Reserved block count:     10\nBlock count:  500\nBlock size:  1024\n"

        assert filesystem.parse_tune2fs(output).block_count == 500

    def test_missing_fields(self):
        with pytest.raises(ValueError):
            filesystem.parse_tune2fs("Filesystem volume name: rootfs\n")


class TestReadSizeInfo:
    @patch("img_shrinker.storage.filesystem.run_command")
    def test_success(self, mock_run, ok, loop_device, tune2fs_output):
        mock_run.return_value = ok(tune2fs_output)

        info, raw = filesystem.read_size_info(loop_device)

        assert info.block_count == 200000
        assert raw == tune2fs_output
        mock_run.assert_called_once_with(
            ["tune2fs", "-l", "/dev/loop7"], log_output=False
        )

    @patch("img_shrinker.storage.filesystem.run_command")
    def test_not_an_ext_filesystem(self, mock_run, failed, loop_device):
        """Test a tune2fs failure maps to exit code 7."""
        mock_run.return_value = failed(1, "Bad magic number in super-block")

        with pytest.raises(FilesystemInspectError) as exc_info:
            filesystem.read_size_info(loop_device)

        assert exc_info.value.exit_code == 7
        assert "Unable to shrink this type of image" in str(exc_info.value)

    @patch("img_shrinker.storage.filesystem.run_command")
    def test_unparseable_output(self, mock_run, ok, loop_device):
        mock_run.return_value = ok("nothing useful")

        with pytest.raises(FilesystemInspectError):
            filesystem.read_size_info(loop_device)


class TestEstimateMinimum:
    @patch("img_shrinker.storage.filesystem.run_command")
    def test_success(self, mock_run, ok, loop_device, resize2fs_minimum_output):
        mock_run.return_value = ok(resize2fs_minimum_output)

        assert filesystem.estimate_minimum(loop_device) == 150000
        mock_run.assert_called_once_with(["resize2fs", "-P", "/dev/loop7"])

    @patch("img_shrinker.storage.filesystem.run_command")
    def test_failure(self, mock_run, failed, loop_device):
        mock_run.return_value = failed()

        with pytest.raises(MinimumEstimateError) as exc_info:
            filesystem.estimate_minimum(loop_device)

        assert exc_info.value.exit_code == 10

    @patch("img_shrinker.storage.filesystem.run_command")
    def test_no_estimate_in_output(self, mock_run, ok, loop_device):
        mock_run.return_value = ok("resize2fs 1.47.0 (5-Feb-2023)\n")

        with pytest.raises(MinimumEstimateError):
            filesystem.estimate_minimum(loop_device)


class TestCheckConsistency:
    """Tests for the escalating e2fsck repair tiers."""

    @patch("img_shrinker.storage.filesystem.run_command")
    def test_clean_filesystem_stops_after_first_tier(self, mock_run, ok, loop_device):
        mock_run.return_value = ok()

        assert filesystem.check_consistency(loop_device) is CheckTier.PREEN
        mock_run.assert_called_once_with(PREEN)

    @patch("img_shrinker.storage.filesystem.run_command")
    def test_errors_corrected_counts_as_clean(self, mock_run, ok, failed, loop_device):
        """Test e2fsck rc 1 (errors corrected) does not escalate."""
        mock_run.return_value = failed(1)

        assert filesystem.check_consistency(loop_device) is CheckTier.PREEN

    @patch("img_shrinker.storage.filesystem.run_command")
    def test_escalates_to_force_yes(self, mock_run, ok, failed, loop_device):
        mock_run.side_effect = [failed(4), ok()]

        assert filesystem.check_consistency(loop_device) is CheckTier.FORCE_YES
        assert mock_run.call_args_list == [call(PREEN), call(FORCE_YES)]

    @patch("img_shrinker.storage.filesystem.run_command")
    def test_no_alternate_superblock_without_opt_in(self, mock_run, failed, loop_device):
        """Test tier 3 is never attempted unless advanced repair was requested."""
        mock_run.return_value = failed(8)

        with pytest.raises(FilesystemUnrecoverableError) as exc_info:
            filesystem.check_consistency(loop_device)

        assert mock_run.call_args_list == [call(PREEN), call(FORCE_YES)]
        assert exc_info.value.exit_code == 9
        assert exc_info.value.tiers == [1, 2]
        assert exc_info.value.returncode == 8

    @patch("img_shrinker.storage.filesystem.run_command")
    def test_alternate_superblock_with_opt_in(self, mock_run, ok, failed, loop_device):
        mock_run.side_effect = [failed(8), failed(8), ok()]

        tier = filesystem.check_consistency(loop_device, advanced_repair=True)

        assert tier is CheckTier.ALTERNATE_SUPERBLOCK
        assert mock_run.call_args_list == [
            call(PREEN),
            call(FORCE_YES),
            call(ALT_SUPERBLOCK),
        ]

    @patch("img_shrinker.storage.filesystem.run_command")
    def test_each_tier_attempted_once(self, mock_run, failed, loop_device):
        mock_run.return_value = failed(12)

        with pytest.raises(FilesystemUnrecoverableError) as exc_info:
            filesystem.check_consistency(loop_device, advanced_repair=True)

        assert mock_run.call_count == 3
        assert exc_info.value.tiers == [1, 2, 3]

    @patch("img_shrinker.storage.filesystem.run_command")
    def test_signal_return_code_is_not_clean(self, mock_run, failed, loop_device):
        mock_run.return_value = failed(-9)

        with pytest.raises(FilesystemUnrecoverableError):
            filesystem.check_consistency(loop_device)

    def test_permitted_tiers(self):
        assert filesystem.permitted_tiers(False) == [CheckTier.PREEN, CheckTier.FORCE_YES]
        assert filesystem.permitted_tiers(True)[-1] is CheckTier.ALTERNATE_SUPERBLOCK


class TestResize:
    @patch("img_shrinker.storage.filesystem.run_command")
    def test_success(self, mock_run, ok, loop_device):
        mock_run.return_value = ok()

        filesystem.resize(loop_device, 155000)

        mock_run.assert_called_once_with(["resize2fs", "-p", "/dev/loop7", "155000"])

    @patch("img_shrinker.storage.filesystem.run_command")
    def test_failure(self, mock_run, failed, loop_device):
        mock_run.return_value = failed(1)

        with pytest.raises(ResizeError) as exc_info:
            filesystem.resize(loop_device, 155000)

        assert exc_info.value.exit_code == 12
        assert exc_info.value.returncode == 1
