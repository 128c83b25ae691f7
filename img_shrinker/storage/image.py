"""Host-side operations on the image file itself.

Operations:
    - copy_image(): Sparse copy of the source to the requested output path
    - truncate_image(): Cut the file at the end read back from the partition table
    - zero_free_space(): Fill a mounted filesystem's free space with zeros
    - human_size(): Format byte counts for progress lines
"""

from __future__ import annotations

import errno
import os
from pathlib import Path

from img_shrinker.logging import LoggerFactory, chown_like

from .commands import command_error, run_command
from .exceptions import ImageCopyError, ResizeError, TruncateError


log = LoggerFactory.for_storage("image")

ZERO_FILE_NAME = "img-shrinker_zero_file"
ZERO_CHUNK_BYTES = 4 * 1024 * 1024


def human_size(size_bytes):
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "K", "M", "G", "T"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}P"


def copy_image(source: Path, destination: Path) -> Path:
    """Copy ``source`` to ``destination``, keeping holes and the source's owner.

    Raises:
        ImageCopyError: If cp fails
    """
    log.info(f"Copying {source} to {destination}...")
    result = run_command(
        ["cp", "--reflink=auto", "--sparse=always", str(source), str(destination)]
    )
    if result.returncode != 0:
        raise ImageCopyError(str(source), str(destination), command_error(result))
    try:
        chown_like(destination, source)
    except OSError as error:
        raise ImageCopyError(str(source), str(destination), str(error)) from error
    return destination


def truncate_image(path: Path, length: int) -> None:
    """Truncate ``path`` to ``length`` bytes.

    Raises:
        TruncateError: If the file cannot be truncated
    """
    log.info("Truncating image")
    if length <= 0:
        raise TruncateError(str(path), length, "refusing to truncate to an empty file")
    try:
        os.truncate(path, length)
    except OSError as error:
        raise TruncateError(str(path), length, str(error)) from error


def zero_free_space(root: Path) -> int:
    """Write zeros into every free block of the filesystem mounted at ``root``.

    The filler file grows until the filesystem is full and is then removed,
    so deleted data cannot be recovered and compresses to almost nothing.

    Returns:
        Number of zero bytes written

    Raises:
        ResizeError: If writing fails for any reason other than a full disk
    """
    filler = root / ZERO_FILE_NAME
    zeros = bytes(ZERO_CHUNK_BYTES)
    written = 0
    try:
        with open(filler, "wb", buffering=0) as handle:
            try:
                while True:
                    written += handle.write(zeros)
            except OSError as error:
                if error.errno != errno.ENOSPC:
                    raise
            os.fsync(handle.fileno())
    except OSError as error:
        raise ResizeError(f"Zeroing free space failed: {error}") from error
    finally:
        if filler.exists():
            filler.unlink()
    return written
