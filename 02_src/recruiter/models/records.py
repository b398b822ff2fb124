"""Applicant profile and turn log models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Literal

from .conversation import ConversationState


class ApplicationStatus(str, Enum):
    """Guild application status."""

    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    DENIED = "DENIED"
    LEFT_SERVER = "LEFT_SERVER"


class CommunityStatus(str, Enum):
    """Community (vouch) status."""

    PENDING = "PENDING"
    VOUCH_ACCEPTED = "VOUCH_ACCEPTED"
    VOUCH_DENIED = "VOUCH_DENIED"
    VOUCH_TIMEOUT = "VOUCH_TIMEOUT"
    ESCALATED = "ESCALATED"
    LEFT_SERVER = "LEFT_SERVER"


@dataclass(frozen=True)
class TurnRecord:
    """A single message in a conversation. Immutable once written."""

    user_id: str
    channel_id: str | None
    author: Literal["user", "agent"]
    content: str
    timestamp: datetime
    external_message_id: str | None = None
    classifier_output: dict | None = None
    seq: int | None = None  # assigned by storage

    def as_history_entry(self) -> dict:
        """Classifier history shape: {"role", "content"}."""
        role = "user" if self.author == "user" else "assistant"
        return {"role": role, "content": self.content}


@dataclass
class ApplicantRecord:
    """Outer profile document for a user who joined the community."""

    user_id: str
    username: str
    channel_id: str | None = None
    role: str | None = None
    application_status: ApplicationStatus = ApplicationStatus.PENDING
    community_status: CommunityStatus = CommunityStatus.PENDING
    vouched_by: str | None = None
    joined_at: datetime | None = None
    last_activity_at: datetime | None = None
    conversation: ConversationState | None = field(default=None, compare=False)
