from .dedup import RecentMessageCache
from .effects import Decision, NotifyStaff, SendMessage, SideEffect, StartVouch
from .engine import DialogueEngine
from .runner import SideEffectRunner
from .service import ConversationService, IVouchStarter, extract_mention

__all__ = [
    "ConversationService",
    "Decision",
    "DialogueEngine",
    "IVouchStarter",
    "NotifyStaff",
    "RecentMessageCache",
    "SendMessage",
    "SideEffect",
    "SideEffectRunner",
    "StartVouch",
    "extract_mention",
]
