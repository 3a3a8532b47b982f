"""The vendor/release image namespace on a mounted data partition.

Layout under the store root::

    <root>/<vendor>/<release>/active    current bootable payload
    <root>/<vendor>/<release>/backup    payload before the latest update

An image is deployed iff its directory exists. All replacements of the
active file are renames, so a power loss leaves either the old or the new
file in place, never a truncated one.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Union

from bootshelf.config.settings import (
    ACTIVE_FILENAME,
    BACKUP_FILENAME,
    PREVIOUS_BACKUP_SUFFIX,
)
from bootshelf.domain import ImageName, is_valid_segment
from bootshelf.logging import LoggerFactory
from bootshelf.services.fetcher import copy_file, is_url
from bootshelf.storage.exceptions import (
    AlreadyDeployedError,
    DeployFailedError,
    FetchError,
    NoBackupError,
    NotDeployedError,
)

if TYPE_CHECKING:
    from bootshelf.services.fetcher import Fetcher


log = LoggerFactory.for_store()

NameLike = Union[ImageName, str]


def _as_name(name: NameLike) -> ImageName:
    if isinstance(name, ImageName):
        return name
    return ImageName.parse(name)


class ImageStore:
    """Image directories below a store root."""

    def __init__(self, root: Path):
        self.root = Path(root)

    # -- paths -----------------------------------------------------------------

    def image_dir(self, name: NameLike) -> Path:
        name = _as_name(name)
        return self.root / name.vendor / name.release

    def active_path(self, name: NameLike) -> Path:
        return self.image_dir(name) / ACTIVE_FILENAME

    def backup_path(self, name: NameLike) -> Path:
        return self.image_dir(name) / BACKUP_FILENAME

    def previous_backup_path(self, name: NameLike) -> Path:
        return self.image_dir(name) / (BACKUP_FILENAME + PREVIOUS_BACKUP_SUFFIX)

    def exists(self, name: NameLike) -> bool:
        return self.image_dir(name).is_dir()

    def has_backup(self, name: NameLike) -> bool:
        return self.backup_path(name).is_file()

    def require(self, name: NameLike) -> ImageName:
        """Return the parsed name, raising NotDeployedError if it is absent."""
        name = _as_name(name)
        if not self.exists(name):
            raise NotDeployedError(name)
        return name

    # -- operations ------------------------------------------------------------

    def create(self, name: NameLike) -> bool:
        """Create the image directory.

        Returns:
            True if the directory was created, False if it already existed

        Raises:
            InvalidNameError: If name is not vendor/release
        """
        path = self.image_dir(name)
        existed = path.is_dir()
        path.mkdir(parents=True, exist_ok=True)
        return not existed

    def write_active(self, name: NameLike, source: str, fetcher: Fetcher) -> None:
        """Materialize the active file from a local path or a URL.

        Raises:
            DeployFailedError: If the source cannot be copied or fetched
        """
        name = _as_name(name)
        dest = self.active_path(name)
        if is_url(source):
            log.info(f"Fetching {name} from {source}")
            try:
                fetcher.fetch(source, dest)
            except FetchError as error:
                raise DeployFailedError(name, error.reason or str(error)) from error
            return

        path = Path(source)
        if not path.is_file():
            raise DeployFailedError(name, f"no such file: {source}")
        log.info(f"Copying {path} to {name}")
        try:
            copy_file(path, dest)
        except OSError as error:
            raise DeployFailedError(name, str(error)) from error

    def deploy(self, name: NameLike, source: str, fetcher: Fetcher) -> None:
        """Create an image and write its active file.

        If anything fails or the process is interrupted while writing, the
        image directory is removed again. Only this vendor/release directory
        is discarded; sibling releases of the same vendor are kept.

        Raises:
            AlreadyDeployedError: If the image directory already exists
            DeployFailedError: If the active file cannot be materialized
        """
        name = _as_name(name)
        if self.exists(name):
            raise AlreadyDeployedError(name)
        self.create(name)
        try:
            self.write_active(name, source, fetcher)
        except BaseException:
            log.warning(f"Deploy of {name} aborted, rolling back")
            self._discard(name)
            raise
        log.success(f"Deployed {name}")

    def revert(self, name: NameLike) -> None:
        """Replace the active file with the backup, consuming the backup.

        Raises:
            NotDeployedError: If the image directory is absent
            NoBackupError: If the image has no backup
        """
        name = self.require(name)
        backup = self.backup_path(name)
        if not backup.is_file():
            raise NoBackupError(name)
        os.replace(backup, self.active_path(name))
        log.success(f"Reverted {name} to its backup")

    def clean(self, name: NameLike) -> bool:
        """Delete the backup of an image.

        Returns:
            True if a backup was removed, False if there was none

        Raises:
            NotDeployedError: If the image directory is absent
        """
        name = self.require(name)
        self.previous_backup_path(name).unlink(missing_ok=True)
        backup = self.backup_path(name)
        if not backup.is_file():
            log.info(f"{name} has no backup, nothing to clean")
            return False
        backup.unlink()
        log.success(f"Removed backup of {name}")
        return True

    def remove(self, name: NameLike) -> None:
        """Delete an image directory with all of its files.

        Raises:
            NotDeployedError: If the image directory is absent
        """
        name = self.require(name)
        self._discard(name)
        log.success(f"Removed {name}")

    def list(self) -> list[ImageName]:
        """Return every vendor/release directory below the root, sorted."""
        if not self.root.is_dir():
            return []
        names = []
        for vendor_dir in self.root.iterdir():
            if not vendor_dir.is_dir() or not is_valid_segment(vendor_dir.name):
                continue
            for release_dir in vendor_dir.iterdir():
                if release_dir.is_dir() and is_valid_segment(release_dir.name):
                    names.append(ImageName(vendor_dir.name, release_dir.name))
        return sorted(names)

    def _discard(self, name: ImageName) -> None:
        shutil.rmtree(self.image_dir(name), ignore_errors=True)
        vendor_dir = self.root / name.vendor
        try:
            vendor_dir.rmdir()
        except OSError:
            # Other releases of this vendor remain.
            pass
