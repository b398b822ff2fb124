"""Intent classification on top of the LLM provider."""

import asyncio
import json
import re
from typing import Any, Protocol

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from ..errors import (
    ClassifierError,
    ClassifierMalformedResponse,
    ClassifierTransportError,
    ClassifierUnavailable,
)
from ..logging_config import get_logger
from ..models import Classification, Intent
from .llm_provider import ILLMProvider, LLMAuthenticationError

logger = get_logger(__name__)

FALLBACK_REPLY = (
    "Sorry, I'm having a little trouble understanding right now. "
    "Could you tell me again what brings you here? For example, are you "
    "looking to apply to the guild, or did a friend in the community invite you?"
)

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)

SYSTEM_PROMPT = """You are the recruitment assistant for the "{community}" community.
A new user is talking to you in their private onboarding channel. Classify the
intent of the latest user message, using the conversation history for context.

Intents:
- GUILD_APPLICATION_INTEREST: the user wants to apply to the guild.
- COMMUNITY_INTEREST_VOUCH: the user knows an existing member who can vouch for them.
  If they name or @mention a specific person, put it in entities.vouch_person_name,
  copy their wording into entities.original_vouch_text and set
  requires_clarification to false. If they only mention "a friend" or similar,
  set vouch_person_name to null, requires_clarification to true and ask for the
  friend's @mention or username.
- GENERAL_QUESTION: a question about the community (rules, schedule, process).
- SOCIAL_GREETING: a greeting with no clear purpose.
- UNCLEAR_INTENT: too vague to act on; requires_clarification must be true.
- END_CONVERSATION: the user is done or says goodbye.
- REQUEST_HUMAN: the user asks for a staff member or a human.
- OTHER: none of the above.

The request is a JSON object {{"message": str, "history": [{{"role", "content"}}]}}.
Answer ONLY with a JSON object of this shape:
{{"intent": str, "entities": object, "suggested_reply": str,
  "confidence": number between 0 and 1, "requires_clarification": bool}}
"""


class ClassifierResponse(BaseModel):
    """Wire shape of a classifier answer."""

    model_config = ConfigDict(extra="ignore")

    intent: str
    entities: dict[str, Any] | None = None
    suggested_reply: str = Field(
        validation_alias=AliasChoices("suggested_reply", "suggested_bot_response")
    )
    confidence: float = Field(
        default=0.0, validation_alias=AliasChoices("confidence", "confidence_score")
    )
    requires_clarification: bool


class IIntentClassifier(Protocol):
    """Classifies the latest user utterance."""

    async def classify(self, message: str, history: list[dict]) -> Classification:
        """Classify, raising a ClassifierError subtype on failure."""
        ...

    async def classify_or_fallback(
        self, message: str, history: list[dict]
    ) -> Classification:
        """Classify, downgrading any failure to a degraded UNCLEAR_INTENT."""
        ...


class IntentClassifier:
    """LLM-backed intent classifier with a bounded request time."""

    def __init__(
        self,
        llm_provider: ILLMProvider | None,
        community_name: str = "Wraiven",
        timeout: float = 20.0,
        max_tokens: int = 1024,
    ):
        self._llm = llm_provider
        self._system_prompt = SYSTEM_PROMPT.format(community=community_name)
        self._timeout = timeout
        self._max_tokens = max_tokens

    async def classify(self, message: str, history: list[dict]) -> Classification:
        """Classify, raising a ClassifierError subtype on failure."""
        if self._llm is None:
            raise ClassifierUnavailable("No LLM provider configured")

        request = {"message": message, "history": history}

        try:
            raw = await asyncio.wait_for(
                self._llm.complete(
                    messages=[{"role": "user", "content": json.dumps(request)}],
                    system=self._system_prompt,
                    max_tokens=self._max_tokens,
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            raise ClassifierTransportError(
                f"Classifier timed out after {self._timeout}s"
            ) from e
        except LLMAuthenticationError as e:
            raise ClassifierUnavailable(str(e)) from e
        except Exception as e:
            raise ClassifierTransportError(str(e)) from e

        return self.parse(raw)

    @staticmethod
    def parse(raw: str | None) -> Classification:
        """Parse and validate a raw classifier answer."""
        if not raw or not raw.strip():
            raise ClassifierMalformedResponse("Empty classifier response")

        text = raw.strip()
        fenced = _FENCE_RE.match(text)
        if fenced:
            text = fenced.group(1)

        try:
            response = ClassifierResponse.model_validate_json(text)
        except ValidationError as e:
            raise ClassifierMalformedResponse(
                f"Invalid classifier response: {e.error_count()} error(s)"
            ) from e

        return Classification(
            intent=Intent.parse(response.intent),
            suggested_reply=response.suggested_reply,
            requires_clarification=response.requires_clarification,
            entities=response.entities or {},
            confidence=response.confidence,
        )

    async def classify_or_fallback(
        self, message: str, history: list[dict]
    ) -> Classification:
        """Classify, downgrading any failure to a degraded UNCLEAR_INTENT."""
        try:
            return await self.classify(message, history)
        except ClassifierError as e:
            logger.warning(
                "Classifier failure (%s): %s", type(e).__name__, e, exc_info=True
            )
            return Classification(
                intent=Intent.UNCLEAR_INTENT,
                suggested_reply=FALLBACK_REPLY,
                requires_clarification=True,
                degraded=True,
                error=type(e).__name__,
            )
