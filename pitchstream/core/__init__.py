"""Core module for configuration and infrastructure."""

from pitchstream.core.config import settings
from pitchstream.core.database import Base, get_db

__all__ = [
    "settings",
    "Base",
    "get_db",
]
