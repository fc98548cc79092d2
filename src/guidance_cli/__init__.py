"""Guidance command-line interface."""

from guidance_engine import __version__

__all__ = ["__version__"]
