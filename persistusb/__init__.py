"""Provision persistent live USB drives from hybrid ISO images."""

from .__version__ import __version__


__all__ = ["__version__"]
