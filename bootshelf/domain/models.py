"""Domain model for the image store and boot menu.

These types replace the bare strings that would otherwise flow between the
CLI, the store and the boot discovery code.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from bootshelf.config.settings import ACTIVE_FILENAME
from bootshelf.storage.exceptions import InvalidNameError


SEGMENT_PATTERN = re.compile(r"[A-Za-z0-9_-]+")


def is_valid_segment(segment: str) -> bool:
    return bool(SEGMENT_PATTERN.fullmatch(segment))


# ==============================================================================
# Image Domain
# ==============================================================================


@dataclass(frozen=True, order=True)
class ImageName:
    """A `vendor/release` image identifier."""

    vendor: str
    release: str

    @classmethod
    def parse(cls, value: str) -> ImageName:
        """Parse and validate a `vendor/release` string.

        Raises:
            InvalidNameError: If the value is not exactly two valid segments
        """
        parts = value.split("/")
        if len(parts) != 2 or not all(is_valid_segment(part) for part in parts):
            raise InvalidNameError(value)
        return cls(vendor=parts[0], release=parts[1])

    @classmethod
    def is_valid(cls, value: str) -> bool:
        try:
            cls.parse(value)
        except InvalidNameError:
            return False
        return True

    def __str__(self) -> str:
        return f"{self.vendor}/{self.release}"


@dataclass(frozen=True)
class Partitions:
    """Device nodes created by the provisioner."""

    boot: str  # e.g., "/dev/sdb1"
    data: str  # e.g., "/dev/sdb2"


# ==============================================================================
# Boot Domain
# ==============================================================================


@dataclass(frozen=True)
class BootEntry:
    """One boot menu entry, derived from the path of an active image.

    For ``(hd0,gpt2)/boot_images/acme/widget/active``:
    disk ``hd0``, partition ``(hd0,gpt2)``, relative_path
    ``/boot_images/acme/widget``, name ``acme/widget``.
    """

    disk: str
    partition: str
    relative_path: str
    name: str

    @property
    def image_path(self) -> str:
        """Image file path relative to the partition root."""
        return f"{self.relative_path}/{ACTIVE_FILENAME}"

    @property
    def grub_path(self) -> str:
        """Full GRUB path of the image file."""
        return f"{self.partition}{self.image_path}"


# ==============================================================================
# Command Domain
# ==============================================================================


class Command(str, Enum):
    """Lifecycle verbs accepted by the CLI."""

    INIT = "init"
    DEPLOY = "deploy"
    UPDATE = "update"
    REVERT = "revert"
    CLEAN = "clean"
    REMOVE = "remove"
    LIST = "list"

    @property
    def arity(self) -> int:
        """Exact number of positional arguments after the verb."""
        return _ARITY[self]

    @property
    def takes_image(self) -> bool:
        return self.arity >= 2

    @property
    def usage(self) -> str:
        return f"{self.value} {' '.join(_USAGE_ARGS[self])}"


_ARITY = {
    Command.INIT: 1,
    Command.DEPLOY: 3,
    Command.UPDATE: 2,
    Command.REVERT: 2,
    Command.CLEAN: 2,
    Command.REMOVE: 2,
    Command.LIST: 1,
}

_USAGE_ARGS = {
    Command.INIT: ("<device>",),
    Command.DEPLOY: ("<device>", "<vendor/release>", "<path-or-url>"),
    Command.UPDATE: ("<device>", "<vendor/release>"),
    Command.REVERT: ("<device>", "<vendor/release>"),
    Command.CLEAN: ("<device>", "<vendor/release>"),
    Command.REMOVE: ("<device>", "<vendor/release>"),
    Command.LIST: ("<device>",),
}
