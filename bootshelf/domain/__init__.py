"""Domain models for image store and boot menu operations."""

from __future__ import annotations

from .models import (
    BootEntry,
    Command,
    ImageName,
    Partitions,
    is_valid_segment,
)


__all__ = [
    "BootEntry",
    "Command",
    "ImageName",
    "Partitions",
    "is_valid_segment",
]
