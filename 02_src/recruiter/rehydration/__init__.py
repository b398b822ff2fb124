"""Rehydration module."""

from .service import RehydrationService

__all__ = ["RehydrationService"]
