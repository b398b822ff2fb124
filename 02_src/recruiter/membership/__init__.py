"""Membership module."""

from .handler import MembershipHandler, channel_name

__all__ = ["MembershipHandler", "channel_name"]
