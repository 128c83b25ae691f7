from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_DEBUG_LOG = Path.cwd() / "img-shrinker.log"


def _console_filter(record) -> bool:
    """Keep variable dumps out of the console; they belong in the debug log."""
    return not record["extra"].get("variable_dump", False)


def setup_logging(
    *,
    debug: bool = False,
    log_file: Path | None = None,
) -> Logger:
    """
    Setup console logging and the optional debug log file.

    Logging Tiers:
    - ERROR: Stage failures that abort the pipeline
    - SUCCESS/INFO: Progress lines shown to the operator
    - DEBUG: Command execution and key variables at every decision point

    Log Files:
    - img-shrinker.log: DEBUG+ events when --debug is enabled. The file is
      recreated on every run.

    Args:
        debug: Enable the debug log file
        log_file: Custom debug log path (defaults to ./img-shrinker.log)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "img-shrinker"})

    # SINK 1: Console (stderr) - progress lines for the operator
    logger.add(
        sys.stderr,
        level="INFO",
        backtrace=False,
        diagnose=False,
        filter=_console_filter,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <12}</cyan> | "
            "{message}"
        ),
    )

    # SINK 2: Debug Log - every command and variable, with the source line
    if debug:
        log_file = log_file or DEFAULT_DEBUG_LOG
        if log_file.exists():
            log_file.unlink()
        logger.info(f"Creating log file {log_file}")
        logger.add(
            log_file,
            level="DEBUG",
            backtrace=True,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[job_id]: <14} | "
                "{name}:{function}:{line} | "
                "{message}"
            ),
        )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking a shrink run
        tags: Tags for filtering (e.g., ["shrink", "storage"])
        source: Source component (e.g., "loop", "parted")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


def log_variables(log: Logger, **variables: Any) -> None:
    """Write key variables to the debug log, one record per variable.

    The records carry the caller's line number, so the debug log shows where
    in the pipeline each value was observed.
    """
    dump = log.bind(variable_dump=True).opt(depth=1)
    for name, value in variables.items():
        dump.debug(f"{name}: {value}")


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking long-running operations with automatic timing.

    Automatically logs operation start, completion, and failure with duration tracking.

    Args:
        operation: Operation name (e.g., "shrink")
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("shrink", image="/tmp/pi.img") as log:
            log.debug("Binding loop device")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.debug(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.debug(
                f"{operation.capitalize()} completed", duration_seconds=round(duration, 2)
            )
        except Exception as e:
            duration = time.time() - start_time
            log.debug(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


def chown_like(path: Path, reference: Path) -> None:
    """Give *path* the owner and group of *reference*.

    Used to hand the debug log and copied images back to the user who owns
    the source image, since the tool itself runs as root.
    """
    stat_result = os.stat(reference)
    os.chown(path, stat_result.st_uid, stat_result.st_gid)


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source, tags, and context for the domain.
    """

    @staticmethod
    def for_shrink(job_id: str | None = None, **details) -> Logger:
        """Logger for the shrink pipeline."""
        if job_id is None:
            job_id = f"shrink-{uuid.uuid4().hex[:8]}"
        return get_logger(job_id=job_id, source="shrink", tags=["shrink", "storage"]).bind(
            **details
        )

    @staticmethod
    def for_storage(source: str) -> Logger:
        """Logger for wrappers around a single external storage tool."""
        return get_logger(source=source, tags=["storage", source])

    @staticmethod
    def for_compression() -> Logger:
        """Logger for the compression stage."""
        return get_logger(source="compress", tags=["compress"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, preconditions, config)."""
        return get_logger(source="system", tags=["system"])
