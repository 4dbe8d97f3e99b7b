"""Support Desk: conversation lifecycle and AI handoff engine."""

from .__version__ import __version__

__all__ = ["__version__"]
