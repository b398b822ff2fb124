"""API routes."""

from . import applications, control, events, observability

__all__ = ["applications", "control", "events", "observability"]
