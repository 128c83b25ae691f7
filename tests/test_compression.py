"""Tests for storage/compression.py - gzip/pigz and xz compression."""

from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from img_shrinker.domain.models import CompressionSpec
from img_shrinker.storage import compression
from img_shrinker.storage.exceptions import CompressError, UnsupportedCompressionError


class TestGetTool:
    def test_known_tools(self):
        assert compression.get_tool("gzip").extension == "gz"
        assert compression.get_tool("xz").extension == "xz"

    def test_unknown_tool(self):
        """Test an unknown compressor maps to exit code 17."""
        with pytest.raises(UnsupportedCompressionError) as exc_info:
            compression.get_tool("bzip2")

        assert exc_info.value.exit_code == 17

    def test_command_name(self):
        assert compression.command_name(CompressionSpec("gzip")) == "gzip"
        assert compression.command_name(CompressionSpec("gzip", parallel=True)) == "pigz"
        assert compression.command_name(CompressionSpec("xz", parallel=True)) == "xz"


class TestResolveOptions:
    """Tests for option precedence."""

    @pytest.mark.parametrize(
        "spec,expected",
        [
            (CompressionSpec("gzip"), []),
            (CompressionSpec("gzip", parallel=True), ["-f9"]),
            (CompressionSpec("xz", parallel=True), ["-T0"]),
            (CompressionSpec("gzip", parallel=True, options="-1"), ["-1"]),
            (CompressionSpec("xz", options="-9e --threads=2"), ["-9e", "--threads=2"]),
            (CompressionSpec("gzip", parallel=True, options=""), []),
            (CompressionSpec("gzip", verbose=True), ["-v"]),
            (CompressionSpec("gzip", parallel=True, verbose=True), ["-f9", "-v"]),
            (CompressionSpec("xz", options="-6", verbose=True), ["-6", "-v"]),
        ],
    )
    def test_precedence(self, spec, expected):
        assert compression.resolve_options(spec) == expected

    def test_build_command(self):
        spec = CompressionSpec("gzip", parallel=True)

        assert compression.build_command(spec, Path("/tmp/pi.img")) == [
            "pigz",
            "-f9",
            "/tmp/pi.img",
        ]


class TestPaths:
    def test_compressed_path(self):
        spec = CompressionSpec("xz")

        assert compression.compressed_path(Path("/tmp/pi.img"), spec) == Path("/tmp/pi.img.xz")

    @pytest.mark.parametrize(
        "path,tool,expected",
        [
            ("/tmp/small.img.gz", "gzip", "/tmp/small.img"),
            ("/tmp/small.img.xz", "xz", "/tmp/small.img"),
            ("/tmp/small.img", "gzip", "/tmp/small.img"),
            ("/tmp/small.img.xz", "gzip", "/tmp/small.img.xz"),
            ("/tmp/.gz", "gzip", "/tmp/.gz"),
        ],
    )
    def test_strip_extension(self, path, tool, expected):
        assert compression.strip_extension(Path(path), CompressionSpec(tool)) == Path(expected)


class TestCompress:
    """Tests for compress()."""

    @staticmethod
    def _compressor(extension):
        def _run(command):
            source = Path(command[-1])
            source.rename(source.with_name(f"{source.name}.{extension}"))
            return Mock(returncode=0, stdout="", stderr="")

        return _run

    @patch("img_shrinker.storage.compression.run_command")
    def test_replaces_image_with_archive(self, mock_run, tmp_path):
        path = tmp_path / "pi.img"
        path.write_bytes(b"\x00" * 1024)
        mock_run.side_effect = self._compressor("gz")

        result = compression.compress(path, CompressionSpec("gzip", parallel=True))

        assert result == tmp_path / "pi.img.gz"
        assert result.exists()
        assert not path.exists()
        assert mock_run.call_args[0][0] == ["pigz", "-f9", str(path)]

    @pytest.mark.parametrize("parallel,exit_code", [(True, 18), (False, 19)])
    @patch("img_shrinker.storage.compression.run_command")
    def test_failure_exit_code(self, mock_run, parallel, exit_code, failed, tmp_path):
        path = tmp_path / "pi.img"
        path.write_bytes(b"\x00")
        mock_run.return_value = failed(1)

        with pytest.raises(CompressError) as exc_info:
            compression.compress(path, CompressionSpec("xz", parallel=parallel))

        assert exc_info.value.exit_code == exit_code
        assert exc_info.value.returncode == 1
        assert path.exists()

    @patch("img_shrinker.storage.compression.run_command")
    def test_original_left_behind(self, mock_run, ok, tmp_path):
        path = tmp_path / "pi.img"
        path.write_bytes(b"\x00")
        (tmp_path / "pi.img.xz").write_bytes(b"\xfd7zXZ")
        mock_run.return_value = ok()

        with pytest.raises(CompressError, match="left the uncompressed image"):
            compression.compress(path, CompressionSpec("xz"))

    @patch("img_shrinker.storage.compression.run_command")
    def test_no_output_produced(self, mock_run, ok, tmp_path):
        path = tmp_path / "pi.img"
        path.write_bytes(b"\x00")
        mock_run.return_value = ok()

        with pytest.raises(CompressError, match="did not produce"):
            compression.compress(path, CompressionSpec("gzip"))
