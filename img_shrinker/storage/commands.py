"""Command execution helpers shared by the storage tool wrappers."""

from __future__ import annotations

import shutil
import subprocess
from typing import Iterable, Sequence

from img_shrinker.logging import LoggerFactory

from .exceptions import MissingToolError


log = LoggerFactory.for_storage("command")

REQUIRED_TOOLS = ("parted", "losetup", "tune2fs", "e2fsck", "resize2fs")


def run_command(
    command: Sequence[str],
    check: bool = False,
    log_output: bool = True,
    log_command: bool = True,
) -> subprocess.CompletedProcess:
    """Run a command with captured text output.

    Unlike ``subprocess.run(check=True)`` the default is to hand back the
    completed process whatever the return code, so each wrapper can map
    failures to its own stage-specific exception.
    """
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            list(command), check=check, text=True, capture_output=True
        )
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {' '.join(command)}")
        if error.stdout:
            log.debug(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            log.debug(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.debug(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    return result


def command_error(result: subprocess.CompletedProcess) -> str:
    """Best single-line description of why a command failed."""
    stderr = (result.stderr or "").strip()
    stdout = (result.stdout or "").strip()
    message = stderr or stdout or "Command failed"
    return message.splitlines()[-1]


def require_tools(tools: Iterable[str]) -> None:
    """Raise MissingToolError for the first tool not found on PATH."""
    for tool in tools:
        if shutil.which(tool) is None:
            raise MissingToolError(tool)
