"""Command dispatch for the image lifecycle.

Each verb of the CLI maps to one handler. All arguments are validated
centrally, in a fixed order, before any handler touches the device:

    1. a known command verb is present
    2. the caller is root
    3. the device argument is an existing block device
    4. the image name (when given) is vendor/release
    5. the argument count matches the verb

Every handler except init works on the data partition through the Mount
Resolver, which releases the mountpoint however the handler exits.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, ContextManager, Optional, Sequence

from bootshelf.config import settings
from bootshelf.domain import Command, ImageName, Partitions
from bootshelf.logging import operation_context
from bootshelf.services.fetcher import Fetcher
from bootshelf.services.update import update_image
from bootshelf.storage import devices, provision
from bootshelf.storage.exceptions import (
    DeviceBusyError,
    DeviceNotFoundError,
    InvalidArgumentError,
    PermissionDeniedError,
)
from bootshelf.storage.image_store import ImageStore
from bootshelf.storage.mount import mounted_data_partition


MountResolver = Callable[[str], ContextManager[Path]]


class LifecycleController:
    """Validates and runs one lifecycle command."""

    def __init__(
        self,
        *,
        fetcher: Optional[Fetcher] = None,
        mount: MountResolver = mounted_data_partition,
        provisioner: Callable[[str], Partitions] = provision.provision,
        is_root: Callable[[], bool] = devices.is_root,
        is_block_device: Callable[[str], bool] = devices.is_block_device,
        active_mountpoints: Callable[[str], list[str]] = devices.get_active_mountpoints,
    ):
        self.fetcher = fetcher or Fetcher()
        self.mount = mount
        self.provisioner = provisioner
        self.is_root = is_root
        self.is_block_device = is_block_device
        self.active_mountpoints = active_mountpoints
        self._handlers = {
            Command.INIT: self.init,
            Command.DEPLOY: self.deploy,
            Command.UPDATE: self.update,
            Command.REVERT: self.revert,
            Command.CLEAN: self.clean,
            Command.REMOVE: self.remove,
            Command.LIST: self.list,
        }

    def validate(self, argv: Sequence[str]) -> tuple[Command, list[str]]:
        """Check argv against the validation order and return the parsed command.

        Raises:
            InvalidArgumentError: Missing/unknown command, bad device, bad
                image name or wrong argument count
            PermissionDeniedError: If not running as root
        """
        if not argv:
            raise InvalidArgumentError("No command given, see --help")
        verb, args = argv[0], list(argv[1:])
        try:
            command = Command(verb)
        except ValueError:
            raise InvalidArgumentError(f"Unknown command '{verb}', see --help") from None

        if not self.is_root():
            raise PermissionDeniedError()

        if not args:
            raise InvalidArgumentError(f"No device given. Usage: bootshelf {command.usage}")
        if not self.is_block_device(args[0]):
            raise DeviceNotFoundError(args[0])

        if command.takes_image and len(args) >= 2:
            ImageName.parse(args[1])

        if len(args) != command.arity:
            raise InvalidArgumentError(
                f"Wrong number of arguments. Usage: bootshelf {command.usage}"
            )
        return command, args

    def run(self, argv: Sequence[str]) -> list[str]:
        """Validate and execute a command.

        Returns:
            Lines to print on stdout
        """
        command, args = self.validate(argv)
        handler = self._handlers[command]
        details = {"device": args[0]}
        if command.takes_image:
            details["image"] = args[1]
        with operation_context(command.value, **details):
            return handler(*args) or []

    # -- handlers --------------------------------------------------------------

    def _store(self, mountpoint: Path) -> ImageStore:
        return ImageStore(mountpoint / settings.get_setting("store_root"))

    def init(self, device: str) -> None:
        mountpoints = self.active_mountpoints(device)
        if mountpoints:
            raise DeviceBusyError(device, mountpoints)
        self.provisioner(device)

    def deploy(self, device: str, image: str, source: str) -> None:
        name = ImageName.parse(image)
        with self.mount(device) as mountpoint:
            self._store(mountpoint).deploy(name, source, self.fetcher)

    def update(self, device: str, image: str) -> None:
        name = ImageName.parse(image)
        with self.mount(device) as mountpoint:
            update_image(self._store(mountpoint), name, self.fetcher)

    def revert(self, device: str, image: str) -> None:
        name = ImageName.parse(image)
        with self.mount(device) as mountpoint:
            self._store(mountpoint).revert(name)

    def clean(self, device: str, image: str) -> None:
        name = ImageName.parse(image)
        with self.mount(device) as mountpoint:
            self._store(mountpoint).clean(name)

    def remove(self, device: str, image: str) -> None:
        name = ImageName.parse(image)
        with self.mount(device) as mountpoint:
            self._store(mountpoint).remove(name)

    def list(self, device: str) -> list[str]:
        with self.mount(device) as mountpoint:
            store = self._store(mountpoint)
            return [
                f"{name} (backup)" if store.has_backup(name) else str(name)
                for name in store.list()
            ]
