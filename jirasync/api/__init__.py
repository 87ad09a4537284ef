"""API routes"""

from jirasync.api import sync

__all__ = ["sync"]
