"""In-place image updates driven by the locator embedded in each image.

Every deployable image reserves a 512 byte window at offset 33651 (the
application use field of the ISO 9660 primary volume descriptor) holding the
URL its updates are published at. An update is a two step protocol:

    1. rename active -> backup (the previous backup is held as backup.prev)
    2. fetch the locator into active, with backup as the delta basis

On success backup.prev is dropped, so only the most recent backup is kept.
On failure or interruption both renames are undone, partial downloads are
deleted, and the image is exactly as it was before the update started.
"""

from __future__ import annotations

import os
from pathlib import Path

from bootshelf.config.settings import UPDATE_LOCATOR_LENGTH, UPDATE_LOCATOR_OFFSET
from bootshelf.domain import ImageName
from bootshelf.logging import LoggerFactory
from bootshelf.services.fetcher import Fetcher, discard_staging, normalize_locator
from bootshelf.storage.exceptions import (
    FetchError,
    NoUpdateInfoError,
    NotDeployedError,
    UpdateFailedError,
)
from bootshelf.storage.image_store import ImageStore


log = LoggerFactory.for_update()


def read_update_locator(
    path: Path,
    offset: int = UPDATE_LOCATOR_OFFSET,
    length: int = UPDATE_LOCATOR_LENGTH,
) -> str:
    """Return the update URL embedded in an image, or "" if there is none."""
    with open(path, "rb") as handle:
        handle.seek(offset)
        raw = handle.read(length)
    text = raw.split(b"\0", 1)[0].decode("utf-8", errors="replace")
    return normalize_locator(text)


def update_image(store: ImageStore, name: ImageName, fetcher: Fetcher) -> None:
    """Replace the active file of name with the version its locator points to.

    Raises:
        NotDeployedError: If the image or its active file is absent
        NoUpdateInfoError: If the image carries no update locator
        UpdateFailedError: If the new version could not be fetched
    """
    store.require(name)
    active = store.active_path(name)
    if not active.is_file():
        raise NotDeployedError(name)

    locator = read_update_locator(active)
    if not locator:
        raise NoUpdateInfoError(name)
    log.info(f"Updating {name} from {locator}")

    backup = store.backup_path(name)
    previous = store.previous_backup_path(name)
    if backup.is_file():
        os.replace(backup, previous)
    os.replace(active, backup)

    try:
        fetcher.fetch(locator, active, basis=backup)
    except BaseException as error:
        log.warning(f"Update of {name} aborted, restoring previous version")
        discard_staging(active)
        os.replace(backup, active)
        if previous.is_file():
            os.replace(previous, backup)
        if isinstance(error, FetchError):
            raise UpdateFailedError(name, error.reason or str(error)) from error
        raise

    previous.unlink(missing_ok=True)
    log.success(f"Updated {name}, previous version kept as backup")
