"""
Pytest configuration and shared fixtures for bootshelf tests.

This module provides common fixtures and utilities used across all test modules.
"""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from bootshelf.config import settings
from bootshelf.config.settings import UPDATE_LOCATOR_OFFSET
from bootshelf.storage.exceptions import FetchError
from bootshelf.storage.image_store import ImageStore


IMAGE_SIZE = UPDATE_LOCATOR_OFFSET + 4096


@pytest.fixture(autouse=True)
def default_settings():
    """Run every test against the built-in defaults."""
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
    yield
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)


# ==============================================================================
# Image Fixtures
# ==============================================================================


def make_image_bytes(locator: str = "", fill: bytes = b"\xab") -> bytes:
    """Build an image payload with locator embedded at the locator offset."""
    data = bytearray(fill * IMAGE_SIZE)
    encoded = locator.encode("utf-8")
    data[UPDATE_LOCATOR_OFFSET : UPDATE_LOCATOR_OFFSET + 512] = encoded + b"\0" * (
        512 - len(encoded)
    )
    return bytes(data)


@pytest.fixture
def image_file(tmp_path) -> Path:
    """A local image file without update information."""
    path = tmp_path / "source.iso"
    path.write_bytes(make_image_bytes(fill=b"\x01"))
    return path


@pytest.fixture
def store(tmp_path) -> ImageStore:
    """An empty image store below a fake data partition mountpoint."""
    root = tmp_path / "data" / "boot_images"
    root.mkdir(parents=True)
    return ImageStore(root)


class FakeFetcher:
    """Fetcher double that writes fixed content or fails."""

    def __init__(
        self,
        content: bytes = b"",
        error: Optional[BaseException] = None,
    ):
        self.content = content
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    def fetch(self, source: str, dest: Path, basis: Optional[Path] = None) -> None:
        basis_content = Path(basis).read_bytes() if basis and Path(basis).exists() else None
        self.calls.append(
            {
                "source": source,
                "dest": Path(dest),
                "basis": basis,
                "basis_content": basis_content,
                "dest_existed": Path(dest).exists(),
            }
        )
        if self.error is not None:
            # Leave a partial file behind like an interrupted transfer would.
            Path(str(dest) + ".part").write_bytes(b"partial")
            raise self.error
        Path(dest).write_bytes(self.content)


@pytest.fixture
def fake_fetcher() -> FakeFetcher:
    return FakeFetcher(content=make_image_bytes(fill=b"\x02"))


@pytest.fixture
def failing_fetcher() -> FakeFetcher:
    return FakeFetcher(error=FetchError("https://example.com/os.iso", "HTTP 404"))


# ==============================================================================
# Device Fixtures
# ==============================================================================


@pytest.fixture
def mock_shelf_device() -> Dict[str, Any]:
    """
    Fixture providing an initialized shelf drive as returned by lsblk.
    """
    return {
        "name": "sdb",
        "path": "/dev/sdb",
        "type": "disk",
        "label": None,
        "fstype": None,
        "partn": None,
        "mountpoint": None,
        "children": [
            {
                "name": "sdb1",
                "path": "/dev/sdb1",
                "type": "part",
                "label": "SHELF_BOOT",
                "fstype": "vfat",
                "partn": 1,
                "mountpoint": None,
            },
            {
                "name": "sdb2",
                "path": "/dev/sdb2",
                "type": "part",
                "label": "SHELF_DATA",
                "fstype": "btrfs",
                "partn": 2,
                "mountpoint": None,
            },
        ],
    }


@pytest.fixture
def fake_mount(tmp_path):
    """Mount Resolver double mounting every device at tmp_path/data."""
    mountpoint = tmp_path / "data"
    mountpoint.mkdir(exist_ok=True)
    calls: List[str] = []

    @contextmanager
    def _mount(device: str):
        calls.append(device)
        yield mountpoint

    _mount.calls = calls
    _mount.mountpoint = mountpoint
    return _mount
