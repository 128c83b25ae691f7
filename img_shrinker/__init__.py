"""Shrink disk images to their smallest safe size."""

from .__version__ import __version__


__all__ = ["__version__"]
