"""Waiter module."""

from .waiter import TurnWaiter, WaiterRegistry, WaiterStatus

__all__ = ["TurnWaiter", "WaiterRegistry", "WaiterStatus"]
