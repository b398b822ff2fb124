"""Side effects produced by the dialogue engine."""

from dataclasses import dataclass, field

from ..models import ConversationState


@dataclass(frozen=True)
class SendMessage:
    """Post a text message in a channel."""

    channel_id: str
    content: str


@dataclass(frozen=True)
class NotifyStaff:
    """Tell the staff channel that a human is needed."""

    user_id: str
    reason: str


@dataclass(frozen=True)
class StartVouch:
    """Hand the conversation to the vouch coordinator."""

    subject_id: str
    voucher_id: str
    channel_id: str
    original_text: str


SideEffect = SendMessage | NotifyStaff | StartVouch


@dataclass
class Decision:
    """Next state plus the side effects that realise it."""

    state: ConversationState
    effects: list[SideEffect] = field(default_factory=list)
    escalated: bool = False
    degraded: bool = False

    @property
    def messages(self) -> list[str]:
        return [e.content for e in self.effects if isinstance(e, SendMessage)]
