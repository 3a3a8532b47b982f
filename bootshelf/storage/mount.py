"""Scoped mounting of partitions at private temporary mountpoints.

Every command that touches the image store works on a mountpoint created
for that invocation only. The mountpoint is handed out by a context manager,
so the partition is unmounted and the directory removed on every exit path:
normal return, exception, Ctrl+C, and SIGTERM/SIGHUP (the CLI turns those
into KeyboardInterrupt).

Functions:
    - find_labeled_partition(): Locate the partition carrying a label
    - acquire_mountpoint(): Mount at a fresh temporary directory
    - mounted(): Mount any partition or image file for the duration of a block
    - mounted_data_partition(): Mount Resolver for the data partition
    - release_mountpoint(): Idempotent unmount + directory removal

Example:
    >>> with mounted_data_partition("/dev/sdb", "SHELF_DATA") as mountpoint:
    ...     print(list(mountpoint.iterdir()))
"""

from __future__ import annotations

import os
import subprocess
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Sequence

from bootshelf.config import settings
from bootshelf.logging import LoggerFactory
from bootshelf.storage.devices import find_partitions_by_label, run_command
from bootshelf.storage.exceptions import (
    MountError,
    NotInitializedError,
    UnmountFailedError,
)


log = LoggerFactory.for_system()

MOUNTPOINT_PREFIX = "bootshelf-"


def _validate_source(source: str) -> None:
    if not isinstance(source, str) or not source:
        raise ValueError(f"Invalid mount source: {source!r}")
    if any(char in source for char in ["\n", "\r", "\0"]):
        raise ValueError(f"Mount source contains invalid characters: {source!r}")


def find_labeled_partition(device: str, label: str) -> str:
    """Return the node of the partition on device whose filesystem label matches.

    Raises:
        NotInitializedError: If no partition carries the label
    """
    matches = find_partitions_by_label(device, label)
    if not matches:
        raise NotInitializedError(device, f"no partition labeled {label}")
    if len(matches) > 1:
        log.warning(
            f"Multiple partitions labeled {label} on {device}, using {matches[0]}"
        )
    return matches[0]


def mount_at(source: str, mountpoint: Path, options: Optional[Sequence[str]] = None) -> None:
    """Mount source on an existing directory.

    Raises:
        ValueError: If source is malformed
        MountError: If the mount command fails
    """
    _validate_source(source)
    command = ["mount"]
    if options:
        command.extend(["-o", ",".join(options)])
    command.extend([source, str(mountpoint)])
    try:
        run_command(command)
    except (subprocess.CalledProcessError, OSError) as error:
        stderr = getattr(error, "stderr", None) or str(error)
        raise MountError(f"Failed to mount {source} at {mountpoint}: {stderr.strip()}") from error


def release_mountpoint(mountpoint: Path, attempts: Optional[int] = None) -> None:
    """Unmount mountpoint until it is no longer mounted, then remove it.

    A mountpoint that another process already unmounted is not an error. The
    last attempt falls back to a lazy unmount.

    Raises:
        UnmountFailedError: If the directory is still mounted after every attempt
    """
    if attempts is None:
        attempts = settings.get_int("unmount_attempts", 5)
    attempts = max(1, attempts)

    for attempt in range(1, attempts + 1):
        if not os.path.ismount(mountpoint):
            break
        command = ["umount", str(mountpoint)]
        if attempt == attempts:
            command.insert(1, "-l")
        try:
            run_command(command, check=True)
            log.debug(f"Unmounted {mountpoint} (attempt {attempt}/{attempts})")
        except (subprocess.CalledProcessError, OSError) as error:
            log.debug(f"Unmount attempt {attempt}/{attempts} for {mountpoint} failed: {error}")
            if attempt < attempts:
                time.sleep(1)
    else:
        if os.path.ismount(mountpoint):
            raise UnmountFailedError(str(mountpoint))

    try:
        mountpoint.rmdir()
    except FileNotFoundError:
        pass
    except OSError as error:
        log.warning(f"Could not remove mountpoint directory {mountpoint}: {error}")


def acquire_mountpoint(source: str, options: Optional[Sequence[str]] = None) -> Path:
    """Mount source at a fresh temporary directory and return it.

    Raises:
        MountError: If the mount command fails (the directory is removed)
    """
    mountpoint = Path(tempfile.mkdtemp(prefix=MOUNTPOINT_PREFIX))
    try:
        mount_at(source, mountpoint, options)
    except BaseException:
        release_mountpoint(mountpoint)
        raise
    log.debug(f"Mounted {source} at {mountpoint}")
    return mountpoint


@contextmanager
def mounted(
    source: str, options: Optional[Sequence[str]] = None
) -> Iterator[Path]:
    """Mount source at a temporary directory for the duration of the block."""
    mountpoint = acquire_mountpoint(source, options)
    try:
        yield mountpoint
    finally:
        release_mountpoint(mountpoint)
        log.debug(f"Released {mountpoint}")


@contextmanager
def mounted_data_partition(device: str, label: Optional[str] = None) -> Iterator[Path]:
    """Mount Resolver: mount the data partition of device and yield its mountpoint.

    Raises:
        NotInitializedError: If no partition carries the data label or it
            cannot be mounted
    """
    label = label or settings.get_setting("data_label")
    partition = find_labeled_partition(device, label)
    try:
        mountpoint = acquire_mountpoint(partition)
    except MountError as error:
        raise NotInitializedError(device, str(error)) from error
    try:
        yield mountpoint
    finally:
        release_mountpoint(mountpoint)
        log.debug(f"Released {mountpoint}")
