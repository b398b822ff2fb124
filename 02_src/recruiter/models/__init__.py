"""Core data models for the recruiter service."""

from .classification import Classification, Intent
from .conversation import (
    STEP_WAITERS,
    ConversationState,
    ConversationStep,
    WaiterKind,
)
from .events import (
    BusMessage,
    ChannelMessage,
    InboundMessage,
    MemberEvent,
    ReactionEvent,
    Topic,
)
from .records import ApplicantRecord, ApplicationStatus, CommunityStatus, TurnRecord
from .tracing import TraceEvent

__all__ = [
    # Conversation
    "ConversationState",
    "ConversationStep",
    "WaiterKind",
    "STEP_WAITERS",
    # Records
    "ApplicantRecord",
    "ApplicationStatus",
    "CommunityStatus",
    "TurnRecord",
    # Classification
    "Classification",
    "Intent",
    # Events
    "BusMessage",
    "Topic",
    "MemberEvent",
    "InboundMessage",
    "ReactionEvent",
    "ChannelMessage",
    # Tracing
    "TraceEvent",
]
