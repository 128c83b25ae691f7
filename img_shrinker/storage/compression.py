"""Compression of the shrunk image with gzip/pigz or xz.

The compressor replaces the image in place (``image.img`` becomes
``image.img.gz``), so a successful run never leaves the uncompressed file
behind.

Option precedence, highest first:
    1. An explicit override for the tool (environment or settings file)
    2. The tool's parallel-mode defaults, when compressing in parallel
    3. No options
The verbose flag is appended last regardless of where the options came from.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from pathlib import Path

from img_shrinker.domain.models import CompressionSpec
from img_shrinker.logging import LoggerFactory

from .commands import command_error, run_command
from .exceptions import CompressError, UnsupportedCompressionError


log = LoggerFactory.for_compression()


@dataclass(frozen=True)
class CompressionTool:
    name: str
    parallel_command: str
    parallel_options: str
    extension: str


COMPRESSION_TOOLS: dict[str, CompressionTool] = {
    "gzip": CompressionTool("gzip", parallel_command="pigz", parallel_options="-f9", extension="gz"),
    "xz": CompressionTool("xz", parallel_command="xz", parallel_options="-T0", extension="xz"),
}


def get_tool(name: str) -> CompressionTool:
    """Look up a supported compressor.

    Raises:
        UnsupportedCompressionError: If ``name`` is not gzip or xz
    """
    try:
        return COMPRESSION_TOOLS[name]
    except KeyError:
        raise UnsupportedCompressionError(name) from None


def command_name(spec: CompressionSpec) -> str:
    """Executable that will run for ``spec`` (pigz for parallel gzip)."""
    tool = get_tool(spec.tool)
    return tool.parallel_command if spec.parallel else tool.name


def resolve_options(spec: CompressionSpec) -> list[str]:
    tool = get_tool(spec.tool)
    options = ""
    if spec.parallel:
        options = tool.parallel_options
    if spec.options is not None:
        options = spec.options
    args = shlex.split(options)
    if spec.verbose:
        args.append("-v")
    return args


def build_command(spec: CompressionSpec, path: Path) -> list[str]:
    return [command_name(spec), *resolve_options(spec), str(path)]


def compressed_path(path: Path, spec: CompressionSpec) -> Path:
    return path.with_name(f"{path.name}.{get_tool(spec.tool).extension}")


def strip_extension(path: Path, spec: CompressionSpec) -> Path:
    """Drop the compressor's extension from a requested output path.

    The compressor appends it itself and refuses files that already carry it.
    """
    suffix = f".{get_tool(spec.tool).extension}"
    if path.name.endswith(suffix) and len(path.name) > len(suffix):
        return path.with_name(path.name[: -len(suffix)])
    return path


def compress(path: Path, spec: CompressionSpec) -> Path:
    """Compress ``path`` in place.

    Returns:
        Path of the compressed file

    Raises:
        CompressError: If the compressor fails, or leaves the original behind
            or no output
    """
    executable = command_name(spec)
    log.info(f"Using {executable} on the shrunk image")
    result = run_command(build_command(spec, path))
    if result.returncode != 0:
        raise CompressError(
            spec.tool,
            f"{executable} failed with rc {result.returncode}: {command_error(result)}",
            parallel=spec.parallel,
            returncode=result.returncode,
        )

    output = compressed_path(path, spec)
    if not output.exists():
        raise CompressError(
            spec.tool, f"{executable} did not produce {output}", parallel=spec.parallel
        )
    if path.exists():
        raise CompressError(
            spec.tool,
            f"{executable} left the uncompressed image {path} in place",
            parallel=spec.parallel,
        )
    return output
