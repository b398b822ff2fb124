"""Vouch coordinator module."""

from .coordinator import THUMBS_DOWN, THUMBS_UP, VouchCoordinator, VouchOutcome

__all__ = ["VouchCoordinator", "VouchOutcome", "THUMBS_UP", "THUMBS_DOWN"]
