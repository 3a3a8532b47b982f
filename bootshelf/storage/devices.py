"""Block device queries using lsblk, sysfs and psutil.

This module answers the questions the lifecycle commands ask about a device
before touching it:

    - Is the argument an existing block device?
    - Which partitions does it have, and which labels do they carry?
    - Is any of its partitions mounted right now?

Device Detection:
    Uses lsblk with JSON output restricted to the device in question:
    - Device name and node path (e.g., sdb, /dev/sdb1)
    - Type (disk or part)
    - Filesystem label and type
    - Partition number (used to build GRUB partition names)
    - Mountpoint (if any)

Mount State:
    psutil.disk_partitions(all=True) is the source of truth for "is mounted",
    since lsblk only reports the first mountpoint of a partition.

Example:
    >>> from bootshelf.storage.devices import get_device_tree, iter_partitions
    >>> tree = get_device_tree("/dev/sdb")
    >>> [part["label"] for part in iter_partitions(tree)]
    ['SHELF_BOOT', 'SHELF_DATA']
"""

from __future__ import annotations

import json
import os
import stat
import subprocess
from typing import Iterable, Optional

import psutil

from bootshelf.logging import LoggerFactory


log = LoggerFactory.for_system()

LSBLK_COLUMNS = "NAME,PATH,TYPE,LABEL,FSTYPE,PARTN,MOUNTPOINT"


def run_command(command, check=True, log_output=True, log_command=True):
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(command, check=check, text=True, capture_output=True)
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


def is_root() -> bool:
    return os.geteuid() == 0


def is_block_device(path: str) -> bool:
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def get_device_tree(device: str) -> Optional[dict]:
    """Return the lsblk entry for a device, including its partitions.

    Returns None when lsblk fails or does not report the device.
    """
    try:
        result = run_command(
            ["lsblk", "-J", "-o", LSBLK_COLUMNS, device],
            log_output=False,
        )
        data = json.loads(result.stdout)
    except (subprocess.CalledProcessError, json.JSONDecodeError, OSError) as error:
        log.debug(f"lsblk failed for {device}: {error}")
        return None
    blockdevices = data.get("blockdevices", [])
    if not blockdevices:
        return None
    return blockdevices[0]


def get_children(device):
    return device.get("children", []) or []


def iter_partitions(device: dict) -> Iterable[dict]:
    stack = list(reversed(get_children(device)))
    while stack:
        child = stack.pop()
        if child.get("type") == "part":
            yield child
        stack.extend(reversed(get_children(child)))


def partition_node(partition: dict) -> Optional[str]:
    path = partition.get("path")
    if path:
        return path
    name = partition.get("name")
    if not name:
        return None
    return f"/dev/{name}"


def partition_number(partition: dict) -> Optional[int]:
    value = partition.get("partn")
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def partition_path(device: str, index: int) -> str:
    """Build the node path of the index-th partition of a disk.

    Disks whose name ends in a digit (mmcblk0, nvme0n1, loop0) separate the
    partition number with a "p".
    """
    suffix = "p" if device[-1].isdigit() else ""
    return f"{device}{suffix}{index}"


def find_partitions_by_label(device: str, label: str) -> list[str]:
    tree = get_device_tree(device)
    if not tree:
        return []
    return [
        node
        for part in iter_partitions(tree)
        if part.get("label") == label and (node := partition_node(part))
    ]


def _device_nodes(device: str) -> set[str]:
    nodes = {os.path.realpath(device)}
    tree = get_device_tree(device)
    if tree:
        for part in iter_partitions(tree):
            node = partition_node(part)
            if node:
                nodes.add(os.path.realpath(node))
    return nodes


def get_active_mountpoints(device: str) -> list[str]:
    """Return every mountpoint of the device or any of its partitions."""
    nodes = _device_nodes(device)
    mountpoints = []
    for entry in psutil.disk_partitions(all=True):
        if not entry.device.startswith("/dev/"):
            continue
        if os.path.realpath(entry.device) in nodes:
            mountpoints.append(entry.mountpoint)
    return mountpoints


def settle(device: str) -> None:
    """Ask the kernel and udev to pick up partition table changes."""
    for cmd in (
        ["sync"],
        ["partprobe", device],
        ["udevadm", "settle", "--timeout=10"],
    ):
        try:
            run_command(cmd, log_command=False)
        except (subprocess.CalledProcessError, OSError) as error:
            log.debug(f"{cmd[0]} failed: {error}")
