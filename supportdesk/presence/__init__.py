"""Presence, typing and viewing indicators."""

from . import schemas
from .repository import InMemoryPresenceRepository, PostgresPresenceRepository
from .service import PresenceTracker

__all__ = [
    "InMemoryPresenceRepository",
    "PostgresPresenceRepository",
    "PresenceTracker",
    "schemas",
]
