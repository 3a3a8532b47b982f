"""Custom exceptions for bootshelf operations.

Every lifecycle command is aborted by the first of these it hits. The CLI
turns them into a single diagnostic line and exit status 1.

Exception Hierarchy:
    StorageError (base)
        ├── InvalidArgumentError
        │   ├── InvalidNameError
        │   └── DeviceNotFoundError
        ├── PermissionDeniedError
        ├── DeviceBusyError
        ├── MountError
        │   ├── NotInitializedError
        │   └── UnmountFailedError
        ├── ImageError
        │   ├── NotDeployedError
        │   ├── AlreadyDeployedError
        │   ├── NoBackupError
        │   └── NoUpdateInfoError
        ├── FetchError
        ├── DeployFailedError
        ├── UpdateFailedError
        └── ProvisionFailedError

Usage:
    from bootshelf.storage.exceptions import NoBackupError

    if not backup.exists():
        raise NoBackupError(name)
"""

from __future__ import annotations


class StorageError(Exception):
    """Base exception for all bootshelf operations."""


class InvalidArgumentError(StorageError):
    """Missing command, unknown command or wrong argument count."""


class InvalidNameError(InvalidArgumentError):
    """Image name does not have the vendor/release form."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(
            f"Invalid image name '{name}': expected vendor/release "
            f"using letters, digits, '_' and '-'"
        )


class DeviceNotFoundError(InvalidArgumentError):
    """Device argument is not an existing block device."""

    def __init__(self, device: str):
        self.device = device
        super().__init__(f"Not a block device: {device}")


class PermissionDeniedError(StorageError):
    """Command requires root privileges."""

    def __init__(self, message: str = "This command must be run as root"):
        super().__init__(message)


class DeviceBusyError(StorageError):
    """Device is currently in use or mounted."""

    def __init__(self, device: str, mountpoints: list[str] | None = None):
        self.device = device
        self.mountpoints = list(mountpoints or [])
        msg = f"Device {device} is busy"
        if self.mountpoints:
            msg += f": mounted at {', '.join(self.mountpoints)}"
        super().__init__(msg)


class MountError(StorageError):
    """Base exception for mount-related errors."""


class NotInitializedError(MountError):
    """Device has no usable data partition."""

    def __init__(self, device: str, reason: str = ""):
        self.device = device
        self.reason = reason
        msg = f"Device {device} is not initialized"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class UnmountFailedError(MountError):
    """A mountpoint stayed mounted after every unmount attempt."""

    def __init__(self, mountpoint: str):
        self.mountpoint = mountpoint
        super().__init__(f"Failed to unmount {mountpoint}")


class ImageError(StorageError):
    """Base exception for errors about a single image."""

    def __init__(self, name: object, message: str):
        self.name = str(name)
        super().__init__(message)


class NotDeployedError(ImageError):
    """Image directory does not exist."""

    def __init__(self, name: object):
        super().__init__(name, f"Image '{name}' is not deployed")


class AlreadyDeployedError(ImageError):
    """Image directory already exists."""

    def __init__(self, name: object):
        super().__init__(
            name, f"Image '{name}' is already deployed, use update or remove it first"
        )


class NoBackupError(ImageError):
    """Image has no backup to revert to."""

    def __init__(self, name: object):
        super().__init__(name, f"Image '{name}' has no backup to revert to")


class NoUpdateInfoError(ImageError):
    """Active image carries no update locator."""

    def __init__(self, name: object):
        super().__init__(name, f"Image '{name}' does not provide update information")


class FetchError(StorageError):
    """Every transfer strategy failed for a source."""

    def __init__(self, source: str, reason: str = ""):
        self.source = source
        self.reason = reason
        msg = f"Failed to fetch {source}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class DeployFailedError(StorageError):
    """Active image could not be materialized during deploy."""

    def __init__(self, name: object, reason: str = ""):
        self.name = str(name)
        self.reason = reason
        msg = f"Failed to deploy '{name}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class UpdateFailedError(StorageError):
    """New active image could not be fetched; the previous one was kept."""

    def __init__(self, name: object, reason: str = ""):
        self.name = str(name)
        self.reason = reason
        msg = f"Failed to update '{name}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ProvisionFailedError(StorageError):
    """Partitioning, formatting or populating a device failed."""

    def __init__(self, message: str, device: str | None = None):
        self.device = device
        super().__init__(message)
