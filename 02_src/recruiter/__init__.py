"""Recruitment dialogue orchestrator."""

from .app import Application, IApplication
from .config import Settings
from .dialogue import ConversationService, DialogueEngine
from .event_bus import EventBus, IEventBus
from .llm import IIntentClassifier, ILLMProvider, IntentClassifier, LLMProvider
from .maintenance import ChannelCleanupJob
from .membership import MembershipHandler
from .models import (
    ApplicantRecord,
    BusMessage,
    Classification,
    ConversationState,
    ConversationStep,
    Intent,
    Topic,
    TraceEvent,
    TurnRecord,
    WaiterKind,
)
from .platform import HttpChatPlatform, IChatPlatform
from .rehydration import RehydrationService
from .storage import IStorage, Storage
from .tracker import ITracker, Tracker
from .vouch import VouchCoordinator
from .waiter import TurnWaiter, WaiterRegistry

__all__ = [
    # Application
    "Application",
    "IApplication",
    "Settings",
    # Models
    "ApplicantRecord",
    "BusMessage",
    "Classification",
    "ConversationState",
    "ConversationStep",
    "Intent",
    "Topic",
    "TraceEvent",
    "TurnRecord",
    "WaiterKind",
    # Components
    "IStorage",
    "Storage",
    "IEventBus",
    "EventBus",
    "ITracker",
    "Tracker",
    "ILLMProvider",
    "LLMProvider",
    "IIntentClassifier",
    "IntentClassifier",
    "IChatPlatform",
    "HttpChatPlatform",
    "TurnWaiter",
    "WaiterRegistry",
    "DialogueEngine",
    "ConversationService",
    "VouchCoordinator",
    "RehydrationService",
    "MembershipHandler",
    "ChannelCleanupJob",
]
