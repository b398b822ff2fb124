"""Maintenance jobs."""

from .cleanup import ChannelCleanupJob

__all__ = ["ChannelCleanupJob"]
