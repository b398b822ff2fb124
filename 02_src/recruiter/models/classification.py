"""Intent classification models."""

from dataclasses import dataclass, field
from enum import Enum


class Intent(str, Enum):
    """Intents the classifier may return."""

    GUILD_APPLICATION_INTEREST = "GUILD_APPLICATION_INTEREST"
    COMMUNITY_INTEREST_VOUCH = "COMMUNITY_INTEREST_VOUCH"
    GENERAL_QUESTION = "GENERAL_QUESTION"
    SOCIAL_GREETING = "SOCIAL_GREETING"
    UNCLEAR_INTENT = "UNCLEAR_INTENT"
    END_CONVERSATION = "END_CONVERSATION"
    REQUEST_HUMAN = "REQUEST_HUMAN"
    OTHER = "OTHER"

    @classmethod
    def parse(cls, value: str | None) -> "Intent":
        """Parse a classifier intent string; unknown values map to OTHER."""
        if not value:
            return cls.OTHER
        try:
            return cls(value.strip().upper())
        except ValueError:
            return cls.OTHER


@dataclass(frozen=True)
class Classification:
    """Structured classifier result for the latest user message."""

    intent: Intent
    suggested_reply: str
    requires_clarification: bool
    entities: dict = field(default_factory=dict)
    confidence: float = 0.0
    degraded: bool = False
    error: str | None = None
    voucher_id: str | None = None  # resolved platform member id

    @property
    def vouch_person_name(self) -> str | None:
        value = self.entities.get("vouch_person_name")
        return value or None

    def to_dict(self) -> dict:
        """Serializable form stored on the TurnRecord."""
        return {
            "intent": self.intent.value,
            "entities": self.entities,
            "suggested_reply": self.suggested_reply,
            "confidence": self.confidence,
            "requires_clarification": self.requires_clarification,
            "degraded": self.degraded,
            "error": self.error,
            "voucher_id": self.voucher_id,
        }
