"""Settings storage for bootshelf configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "BOOTSHELF_SETTINGS_PATH",
        "/etc/bootshelf/settings.json",
    )
)

# Image format constants. These are baked into deployed images and the boot
# partition, so they are not user settings.
UPDATE_LOCATOR_OFFSET = 33651
UPDATE_LOCATOR_LENGTH = 512
DELTA_SUFFIX = ".zsync"
ACTIVE_FILENAME = "active"
BACKUP_FILENAME = "backup"
PARTIAL_SUFFIX = ".part"
DELTA_STAGING_SUFFIX = ".delta"
PREVIOUS_BACKUP_SUFFIX = ".prev"
GRUB_CONFIG_PATH = Path("boot") / "grub" / "grub.cfg"
LOOPBACK_CONFIG_PATH = "/boot/grub/loopback.cfg"

DEFAULT_SETTINGS: dict[str, Any] = {
    "boot_label": "SHELF_BOOT",
    "data_label": "SHELF_DATA",
    "store_root": "boot_images",
    "boot_payload_dir": "/usr/share/bootshelf/boot",
    "boot_partition_size": "512MiB",
    "fetch_retries": 3,
    "fetch_retry_delay_seconds": 5,
    "fetch_timeout_seconds": 3600,
    "fetch_chunk_size": 1024 * 1024,
    "unmount_attempts": 5,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_SETTINGS))


settings_store = SettingsStore()


def load_settings(path: Path | None = None) -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    path = path or SETTINGS_PATH
    if not path.exists():
        return
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def get_int(key: str, default: int = 0) -> int:
    try:
        return int(get_setting(key, default))
    except (TypeError, ValueError):
        return default
