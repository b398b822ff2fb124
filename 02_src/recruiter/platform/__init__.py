"""Chat platform module."""

from .base import (
    MEMBER_CHANNEL_PERMISSIONS,
    READ_MESSAGE_HISTORY,
    SEND_MESSAGES,
    VIEW_CHANNEL,
    IChatPlatform,
)
from .http_platform import HttpChatPlatform

__all__ = [
    "IChatPlatform",
    "HttpChatPlatform",
    "MEMBER_CHANNEL_PERMISSIONS",
    "VIEW_CHANNEL",
    "SEND_MESSAGES",
    "READ_MESSAGE_HISTORY",
]
