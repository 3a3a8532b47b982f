from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "BOOTSHELF_LOG_DIR",
        Path.home() / ".local" / "state" / "bootshelf" / "logs",
    )
)


def _should_log_transfer(record) -> bool:
    """Filter per-chunk transfer logs - only show in TRACE mode."""
    tags = record["extra"].get("tags", [])

    if "chunk" in tags:
        return record["level"].no <= logger.level("TRACE").no

    return True


def _should_log_subprocess(record) -> bool:
    """Filter raw subprocess output - these are noisy below DEBUG."""
    message = record["message"].lower()

    if message.startswith(("stdout:", "stderr:")):
        return record["level"].no >= logger.level("DEBUG").no

    return True


def _combined_filter(record) -> bool:
    """Combined filter for all log suppression rules."""
    return _should_log_transfer(record) and _should_log_subprocess(record)


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup logging with a console sink and rotating file sinks.

    Logging Tiers:
    - CRITICAL/ERROR: Command failures (the single diagnostic shown to the user)
    - SUCCESS/INFO: Lifecycle operations and state changes
    - DEBUG: Command execution, mount handling, fetch strategy decisions
    - TRACE: Ultra-verbose (per-chunk transfer progress)

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    The console only shows WARNING+ unless debug or trace is enabled, so a
    failing command prints exactly one line.

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/bootshelf/logs)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "WARNING"

    # SINK 1: Console (stderr)
    if debug or trace:
        console_format = (
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "<blue>{extra[job_id]: <16}</blue> | "
            "{message}"
        )
    else:
        console_format = "<level>{level}</level>: {message}"
    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        colorize=None,
        format=console_format,
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        logger.debug(f"File logging disabled, cannot create {log_dir}: {error}")
        return logger

    # SINK 2: Operations Log - Important events only (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[job_id]: <16} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log - Detailed diagnostics (DEBUG+ when debug=True)
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <16} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Structured JSON Log - For analysis tools (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        serialize=True,
        format="{message}",
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
        job_id: Job identifier for tracking operations
        tags: Tags for filtering (e.g., ["store", "deploy"])
        source: Source component (e.g., "store", "fetch", "boot")

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


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking a lifecycle command with automatic timing.

    Logs operation start and completion at INFO/SUCCESS. Failures are logged
    at DEBUG with the error details; the CLI reports the diagnostic itself.

    Args:
        operation: Operation name (e.g., "deploy", "update", "init")
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("deploy", device="/dev/sdb", image="acme/os") as log:
            log.debug("Fetching image")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started")

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed",
                duration_seconds=round(duration, 2),
            )
        except BaseException as e:
            duration = time.time() - start_time
            log.debug(
                f"{operation.capitalize()} failed: {e}",
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source and tags for the domain.
    """

    @staticmethod
    def for_store() -> Logger:
        """Logger for image store operations."""
        return get_logger(source="store", tags=["store", "image"])

    @staticmethod
    def for_update() -> Logger:
        """Logger for the update protocol."""
        return get_logger(source="update", tags=["update", "image"])

    @staticmethod
    def for_fetch(job_id: str | None = None) -> Logger:
        """Logger for file transfers."""
        if job_id is None:
            job_id = f"fetch-{uuid.uuid4().hex[:8]}"
        return get_logger(job_id=job_id, source="fetch", tags=["fetch", "network"])

    @staticmethod
    def for_boot() -> Logger:
        """Logger for boot discovery and boot partition handling."""
        return get_logger(source="boot", tags=["boot", "grub"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for device, mount and provisioning operations."""
        return get_logger(source="system", tags=["system"])


class ThrottledLogger:
    """
    Logger wrapper that throttles high-frequency log events.

    Used for download progress, which would otherwise log once per chunk.
    """

    def __init__(self, log: Logger, interval_seconds: float = 5.0):
        """
        Initialize throttled logger.

        Args:
            log: Base logger to wrap
            interval_seconds: Minimum seconds between log emissions
        """
        self.log = log
        self.interval = interval_seconds
        self.last_log_time: dict[str, float] = {}

    def debug(self, key: str, message: str, **kwargs) -> None:
        """Log at DEBUG level, throttled by key."""
        self._throttled_log("DEBUG", key, message, **kwargs)

    def info(self, key: str, message: str, **kwargs) -> None:
        """Log at INFO level, throttled by key."""
        self._throttled_log("INFO", key, message, **kwargs)

    def _throttled_log(self, level: str, key: str, message: str, **kwargs) -> None:
        now = time.time()
        last_time = self.last_log_time.get(key, 0)

        if now - last_time >= self.interval:
            log_method = getattr(self.log, level.lower())
            log_method(message, **kwargs)
            self.last_log_time[key] = now
