"""Custom exceptions for the shrink pipeline.

Every failure the pipeline can report is a ``ShrinkError`` carrying the name
of the stage that failed and the process exit code for that stage, so callers
can script on the outcome.

Exception Hierarchy:
    ShrinkError (base)
        ├── PreconditionError
        │   ├── ImageNotFoundError
        │   ├── NotPrivilegedError
        │   ├── MissingToolError
        │   └── UnsupportedCompressionError
        ├── ImageCopyError
        ├── PartitionTableError
        │   ├── PartitionReadError
        │   ├── PartitionDeleteError
        │   ├── PartitionCreateError
        │   └── PartitionReadbackError
        ├── BindError
        ├── FilesystemInspectError
        │   └── MinimumEstimateError
        ├── FilesystemUnrecoverableError
        ├── MountError
        │   └── UnmountFailedError
        ├── ResizeError
        ├── TruncateError
        ├── CompressError
        └── GuestFilesError
            ├── AutoexpandError
            └── PrepError

Usage:
    from img_shrinker.storage.exceptions import TruncateError

    try:
        os.truncate(path, length)
    except OSError as error:
        raise TruncateError(path, length, str(error)) from error
"""

from __future__ import annotations

from img_shrinker.domain.models import ExitCode


class ShrinkError(Exception):
    """Base exception for all pipeline failures."""

    stage = "shrink"
    exit_code = ExitCode.USAGE

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class PreconditionError(ShrinkError):
    """Base exception for checks made before the image is touched."""

    stage = "preconditions"


class ImageNotFoundError(PreconditionError):
    """Target image is not a regular file."""

    exit_code = ExitCode.NOT_A_FILE

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"{path} is not a file...")


class NotPrivilegedError(PreconditionError):
    """Tool was not started as root."""

    exit_code = ExitCode.NOT_ROOT

    def __init__(self):
        super().__init__("You need to be running as root.")


class MissingToolError(PreconditionError):
    """A required external command is not installed."""

    exit_code = ExitCode.MISSING_TOOL

    def __init__(self, tool: str):
        self.tool = tool
        super().__init__(f"{tool} is not installed.")


class UnsupportedCompressionError(PreconditionError):
    """Requested compression tool is not one we know how to drive."""

    exit_code = ExitCode.UNSUPPORTED_COMPRESSION

    def __init__(self, tool: str):
        self.tool = tool
        super().__init__(f"{tool} is an unsupported ziptool.")


class ImageCopyError(ShrinkError):
    """Copying the source image to the output path failed."""

    stage = "copy"
    exit_code = ExitCode.COPY_FAILED

    def __init__(self, source: str, destination: str, reason: str = ""):
        self.source = source
        self.destination = destination
        msg = f"Could not copy {source} to {destination}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class PartitionTableError(ShrinkError):
    """Base exception for partition table failures."""

    stage = "partition table"
    exit_code = ExitCode.PARTED_READ_FAILED

    def __init__(self, message: str, image: str | None = None, returncode: int | None = None):
        self.image = image
        self.returncode = returncode
        super().__init__(message)


class PartitionReadError(PartitionTableError):
    """parted could not list the partition table."""

    stage = "read partition table"
    exit_code = ExitCode.PARTED_READ_FAILED


class PartitionDeleteError(PartitionTableError):
    """parted could not remove the partition entry."""

    stage = "delete partition"
    exit_code = ExitCode.PARTITION_DELETE_FAILED


class PartitionCreateError(PartitionTableError):
    """parted could not recreate the partition entry with its new end."""

    stage = "recreate partition"
    exit_code = ExitCode.PARTITION_CREATE_FAILED


class PartitionReadbackError(PartitionTableError):
    """The rewritten table could not be read back to size the image."""

    stage = "read back partition table"
    exit_code = ExitCode.PARTITION_READBACK_FAILED


class BindError(ShrinkError):
    """Loop device attach or detach failed."""

    stage = "bind loop device"
    exit_code = ExitCode.BIND_FAILED

    def __init__(self, message: str, device: str | None = None):
        self.device = device
        super().__init__(message)


class FilesystemInspectError(ShrinkError):
    """Filesystem metadata could not be read."""

    stage = "inspect filesystem"
    exit_code = ExitCode.TUNE2FS_FAILED

    def __init__(self, message: str, device: str | None = None, output: str = ""):
        self.device = device
        self.output = output
        super().__init__(message)


class MinimumEstimateError(FilesystemInspectError):
    """resize2fs could not estimate the minimum filesystem size."""

    stage = "estimate minimum size"
    exit_code = ExitCode.MINIMUM_ESTIMATE_FAILED


class FilesystemUnrecoverableError(ShrinkError):
    """e2fsck still reports errors after every permitted repair tier."""

    stage = "check filesystem"
    exit_code = ExitCode.FILESYSTEM_UNRECOVERABLE

    def __init__(self, device: str, returncode: int, tiers: list[int]):
        self.device = device
        self.returncode = returncode
        self.tiers = tiers
        super().__init__(
            f"Filesystem recoveries failed on {device} "
            f"(e2fsck rc {returncode} after tiers {tiers}). Giving up..."
        )


class MountError(ShrinkError):
    """Mounting or unmounting the filesystem failed."""

    stage = "mount filesystem"
    exit_code = ExitCode.MOUNT_FAILED

    def __init__(self, message: str, device: str, mountpoint: str):
        self.device = device
        self.mountpoint = mountpoint
        super().__init__(message)


class UnmountFailedError(MountError):
    """The filesystem could not be unmounted."""

    stage = "unmount filesystem"


class ResizeError(ShrinkError):
    """Filesystem resize or free-space zeroing failed."""

    stage = "shrink filesystem"
    exit_code = ExitCode.RESIZE_FAILED

    def __init__(self, message: str, device: str | None = None, returncode: int | None = None):
        self.device = device
        self.returncode = returncode
        super().__init__(message)


class TruncateError(ShrinkError):
    """Image truncation failed after the partition table was rewritten."""

    stage = "truncate image"
    exit_code = ExitCode.TRUNCATE_FAILED

    def __init__(self, path: str, length: int, reason: str = ""):
        self.path = path
        self.length = length
        msg = f"Failed to truncate {path} to {length} bytes"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class CompressError(ShrinkError):
    """The compressor failed; the image is left shrunk but uncompressed."""

    stage = "compress image"

    def __init__(self, tool: str, message: str, parallel: bool = False, returncode: int | None = None):
        self.tool = tool
        self.parallel = parallel
        self.returncode = returncode
        super().__init__(message)

    @property
    def exit_code(self) -> ExitCode:  # type: ignore[override]
        if self.parallel:
            return ExitCode.PARALLEL_COMPRESS_FAILED
        return ExitCode.COMPRESS_FAILED


class GuestFilesError(ShrinkError):
    """Files inside the mounted guest filesystem could not be changed."""

    stage = "update guest files"
    exit_code = ExitCode.GUEST_FILES_FAILED

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message)


class AutoexpandError(GuestFilesError):
    """The autoexpand rc.local could not be installed."""

    stage = "enable autoexpand"


class PrepError(GuestFilesError):
    """Removing machine specific files from the guest failed."""

    stage = "prep image"
