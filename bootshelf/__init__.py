"""Manage a repository of bootable OS images on a removable drive."""

from bootshelf.__version__ import __version__

__all__ = ["__version__"]
