"""Device provisioning for `bootshelf init`.

Turns a removable drive into an image shelf with two GPT partitions:

    1  boot  vfat   label SHELF_BOOT  EFI system partition with GRUB and the
                                      discovery script as grub.cfg
    2  data  btrfs  label SHELF_DATA  image store (empty store root)

Operations:
    - partition_device(): Wipe signatures, write GPT, create both partitions
    - format_partitions(): mkfs.vfat / mkfs.btrfs with the configured labels
    - populate_boot_partition(): Copy the boot-loader payload, write grub.cfg
    - populate_data_partition(): Create the store root
    - provision(): All of the above, in order

Implementation Details:
    - Uses wipefs + parted for partition management
    - Retries partition table creation while the kernel releases the device
    - Waits for udev to create partition nodes before formatting

Security Notes:
    - All operations require root privileges
    - The caller must verify the device is not mounted first
"""

from __future__ import annotations

import os
import shutil
import subprocess
import time
from pathlib import Path
from typing import Optional

from bootshelf.boot.discovery import render_discovery_script
from bootshelf.config import settings
from bootshelf.config.settings import GRUB_CONFIG_PATH
from bootshelf.domain import Partitions
from bootshelf.logging import LoggerFactory
from bootshelf.storage.devices import partition_path, run_command, settle
from bootshelf.storage.exceptions import MountError, ProvisionFailedError
from bootshelf.storage.mount import mounted


log = LoggerFactory.for_system()

PARTITION_TABLE_RETRIES = 3
RETRY_DELAYS = [2, 4, 6]


def _run(command: list[str], device: str, what: str) -> None:
    try:
        run_command(command)
    except (subprocess.CalledProcessError, OSError) as error:
        stderr = getattr(error, "stderr", None) or str(error)
        raise ProvisionFailedError(f"{what} failed: {stderr.strip()}", device) from error


def _create_partition_table(device: str) -> None:
    """Create an empty GPT partition table.

    Uses retry logic to handle intermittent device busy errors that can occur
    right after signatures were wiped.
    """
    for attempt in range(PARTITION_TABLE_RETRIES):
        log.debug(
            f"Creating GPT partition table on {device} "
            f"(attempt {attempt + 1}/{PARTITION_TABLE_RETRIES})"
        )
        result = run_command(
            ["parted", "-s", device, "mklabel", "gpt"],
            check=False,
            log_command=False,
        )
        if result.returncode == 0:
            return

        stderr_msg = result.stderr.strip() if result.stderr else "no error message"
        log.warning(
            f"parted failed (attempt {attempt + 1}/{PARTITION_TABLE_RETRIES}): {stderr_msg}"
        )
        if attempt < PARTITION_TABLE_RETRIES - 1:
            settle(device)
            time.sleep(RETRY_DELAYS[attempt])

    raise ProvisionFailedError(f"Could not create partition table on {device}", device)


def _wait_for_node(path: str, timeout_seconds: float = 5.0) -> None:
    deadline = time.monotonic() + timeout_seconds
    while time.monotonic() < deadline:
        if os.path.exists(path):
            return
        time.sleep(0.5)
    raise ProvisionFailedError(f"Partition node {path} did not appear", path)


def partition_device(device: str, boot_size: Optional[str] = None) -> Partitions:
    """Wipe device and create the boot and data partitions."""
    boot_size = boot_size or settings.get_setting("boot_partition_size")
    log.info(f"Partitioning {device}")

    _run(["wipefs", "--all", device], device, "Wiping signatures")
    _create_partition_table(device)
    _run(
        ["parted", "-s", device, "mkpart", "boot", "fat32", "1MiB", boot_size],
        device,
        "Creating boot partition",
    )
    _run(["parted", "-s", device, "set", "1", "esp", "on"], device, "Flagging boot partition")
    _run(
        ["parted", "-s", device, "mkpart", "data", "btrfs", boot_size, "100%"],
        device,
        "Creating data partition",
    )
    settle(device)

    partitions = Partitions(boot=partition_path(device, 1), data=partition_path(device, 2))
    _wait_for_node(partitions.boot)
    _wait_for_node(partitions.data)
    return partitions


def format_partitions(
    partitions: Partitions,
    boot_label: Optional[str] = None,
    data_label: Optional[str] = None,
) -> None:
    boot_label = boot_label or settings.get_setting("boot_label")
    data_label = data_label or settings.get_setting("data_label")
    log.info(f"Formatting {partitions.boot} ({boot_label}) and {partitions.data} ({data_label})")
    _run(
        ["mkfs.vfat", "-F", "32", "-n", boot_label, partitions.boot],
        partitions.boot,
        "Formatting boot partition",
    )
    _run(
        ["mkfs.btrfs", "-f", "-L", data_label, partitions.data],
        partitions.data,
        "Formatting data partition",
    )


def populate_boot_partition(partition: str, payload_dir: Optional[Path] = None) -> None:
    """Copy the boot-loader payload and install the discovery script."""
    payload_dir = Path(payload_dir or settings.get_setting("boot_payload_dir"))
    if not payload_dir.is_dir():
        raise ProvisionFailedError(f"Boot loader payload not found: {payload_dir}", partition)
    try:
        with mounted(partition) as mountpoint:
            shutil.copytree(payload_dir, mountpoint, dirs_exist_ok=True)
            grub_cfg = mountpoint / GRUB_CONFIG_PATH
            grub_cfg.parent.mkdir(parents=True, exist_ok=True)
            grub_cfg.write_text(render_discovery_script(), encoding="utf-8")
    except (MountError, OSError, shutil.Error) as error:
        raise ProvisionFailedError(f"Populating boot partition failed: {error}", partition) from error
    log.debug(f"Installed boot loader payload from {payload_dir}")


def populate_data_partition(partition: str, store_root: Optional[str] = None) -> None:
    store_root = store_root or settings.get_setting("store_root")
    try:
        with mounted(partition) as mountpoint:
            (mountpoint / store_root).mkdir(exist_ok=True)
    except (MountError, OSError) as error:
        raise ProvisionFailedError(f"Populating data partition failed: {error}", partition) from error


def provision(device: str) -> Partitions:
    """Partition, format and populate device.

    Raises:
        ProvisionFailedError: If any step fails
    """
    payload_dir = Path(settings.get_setting("boot_payload_dir"))
    if not payload_dir.is_dir():
        raise ProvisionFailedError(f"Boot loader payload not found: {payload_dir}", device)

    partitions = partition_device(device)
    format_partitions(partitions)
    populate_boot_partition(partitions.boot, payload_dir)
    populate_data_partition(partitions.data)
    log.success(f"Provisioned {device}: boot={partitions.boot} data={partitions.data}")
    return partitions
