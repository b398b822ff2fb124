"""Chat-platform event models and EventBus envelopes."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Topic(str, Enum):
    """EventBus topics, one per consumed platform event."""

    MEMBER_JOINED = "member_joined"
    MEMBER_LEFT = "member_left"
    MESSAGE_RECEIVED = "message_received"
    REACTION_ADDED = "reaction_added"


@dataclass
class BusMessage:
    """A message exchanged through EventBus."""

    id: str
    topic: Topic
    payload: dict  # varies by topic
    source: str  # component that published
    timestamp: datetime


@dataclass(frozen=True)
class MemberEvent:
    """A member joined or left the community."""

    user_id: str
    username: str = ""


@dataclass(frozen=True)
class InboundMessage:
    """A message posted in a channel."""

    message_id: str
    channel_id: str
    author_id: str
    content: str
    timestamp: datetime
    is_bot: bool = False


@dataclass(frozen=True)
class ReactionEvent:
    """A reaction added to a message."""

    message_id: str
    channel_id: str
    user_id: str
    emoji: str


@dataclass(frozen=True)
class ChannelMessage:
    """An entry of a channel's recent message log."""

    message_id: str
    channel_id: str
    author_id: str
    content: str
    timestamp: datetime
    is_bot: bool = False
