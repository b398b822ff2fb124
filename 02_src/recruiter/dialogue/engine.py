"""Dialogue engine: the conversation state machine.

The engine is pure. It takes the current ConversationState and a
Classification and returns a Decision (next state + side effects). The
ConversationService persists the state, runs the effects and arms the
waiter named by the new state.
"""

from dataclasses import replace
from datetime import datetime

from ..config import Settings
from ..logging_config import get_logger
from ..models import Classification, ConversationState, ConversationStep, Intent
from .effects import Decision, NotifyStaff, SendMessage, SideEffect, StartVouch

logger = get_logger(__name__)

OPENING_PROMPT = "What is your purpose for joining the {community} Discord?"
DEFAULT_CLARIFICATION = (
    "Could you tell me a bit more about what you're looking for? For example, "
    "are you interested in applying to the guild, or in joining friends who "
    "are already part of the community?"
)
VOUCH_MENTION_PROMPT = (
    "Great! Who in the community can vouch for you? Please @mention them "
    "or give me their exact username."
)
VOUCH_NOT_FOUND = (
    "I couldn't find a member called {name}. Could you @mention them "
    "directly so I can reach them?"
)
APPLICATION_OFFER = (
    "When you're ready, use the /apply command and I'll open a dedicated "
    "application channel for you."
)
GOODBYE = "Thanks for stopping by! Message here again any time you need something."
HUMAN_HANDOFF = "No problem, I've let the staff know. Someone will be with you shortly."
ESCALATION_MESSAGE = (
    "I'm having trouble helping with this, so I've asked a staff member to "
    "step in. A human will be with you shortly."
)
STILL_THERE = (
    "Are you still there? I'll pause here for now. A recruiter can pick "
    "this up with you later."
)


class DialogueEngine:
    """Computes conversation transitions."""

    def __init__(self, settings: Settings | None = None):
        self._settings = settings or Settings()

    @property
    def max_attempts(self) -> int:
        return self._settings.max_clarification_attempts

    def begin(
        self,
        state: ConversationState,
        channel_id: str,
        now: datetime,
        greeting: str | None = None,
    ) -> Decision:
        """Open a conversation: ask the purpose question and wait for it."""
        new = replace(state, channel_id=channel_id, attempt_count=0, last_intent=None)
        new.enter(
            ConversationStep.AWAITING_INITIAL_MESSAGE,
            now,
            self._settings.initial_response_timeout,
        )
        effects: list[SideEffect] = []
        if greeting:
            effects.append(SendMessage(channel_id, greeting))
        effects.append(
            SendMessage(
                channel_id,
                OPENING_PROMPT.format(community=self._settings.community_name),
            )
        )
        return Decision(state=new, effects=effects)

    def advance(
        self,
        state: ConversationState,
        classification: Classification,
        now: datetime,
    ) -> Decision:
        """Apply one classified user turn."""
        new = replace(state, last_intent=classification.intent.value)

        if classification.degraded:
            logger.warning(
                "Degraded turn for %s (%s), attempt %d",
                state.user_id,
                classification.error,
                state.attempt_count,
                extra={"user_id": state.user_id, "step": state.current_step.value},
            )

        if (
            classification.intent is Intent.COMMUNITY_INTEREST_VOUCH
            and not classification.voucher_id
        ):
            name = classification.vouch_person_name
            if name:
                prompt = VOUCH_NOT_FOUND.format(name=name)
            else:
                prompt = classification.suggested_reply or VOUCH_MENTION_PROMPT
            return self._clarify(
                new,
                classification,
                now,
                ConversationStep.AWAITING_VOUCH_MENTION,
                self._settings.vouch_mention_timeout,
                prompt,
            )

        if classification.requires_clarification:
            return self._clarify(
                new,
                classification,
                now,
                ConversationStep.AWAITING_CLARIFICATION,
                self._settings.clarification_timeout,
                classification.suggested_reply or DEFAULT_CLARIFICATION,
            )

        new.attempt_count = 0
        return self._dispatch(new, classification, now)

    def expire(self, state: ConversationState, now: datetime) -> Decision:
        """The armed waiter ran out: nudge the user and go idle."""
        new = replace(state)
        new.reset(now)
        effects: list[SideEffect] = []
        self._say(effects, new.channel_id, STILL_THERE)
        return Decision(state=new, effects=effects)

    def _dispatch(
        self,
        new: ConversationState,
        classification: Classification,
        now: datetime,
    ) -> Decision:
        channel = new.channel_id
        effects: list[SideEffect] = []
        intent = classification.intent

        if intent is Intent.GUILD_APPLICATION_INTEREST:
            self._say(effects, channel, classification.suggested_reply)
            self._say(effects, channel, APPLICATION_OFFER)
            new.enter(
                ConversationStep.GENERAL_LISTENING, now, self._settings.general_timeout
            )

        elif intent is Intent.COMMUNITY_INTEREST_VOUCH:
            self._say(effects, channel, classification.suggested_reply)
            new.enter(
                ConversationStep.VOUCH_ACTIVE,
                now,
                self._settings.vouch_reaction_timeout,
            )
            new.vouch_initiator_id = classification.voucher_id
            effects.append(
                StartVouch(
                    subject_id=new.user_id,
                    voucher_id=classification.voucher_id,
                    channel_id=channel,
                    original_text=classification.entities.get("original_vouch_text")
                    or "",
                )
            )

        elif intent is Intent.END_CONVERSATION:
            self._say(effects, channel, classification.suggested_reply or GOODBYE)
            new.reset(now)

        elif intent is Intent.REQUEST_HUMAN:
            self._say(effects, channel, HUMAN_HANDOFF)
            effects.append(NotifyStaff(new.user_id, "User asked for a staff member"))
            new.reset(now)

        else:
            self._say(effects, channel, classification.suggested_reply)
            new.enter(
                ConversationStep.GENERAL_LISTENING, now, self._settings.general_timeout
            )

        return Decision(state=new, effects=effects, degraded=classification.degraded)

    def _clarify(
        self,
        new: ConversationState,
        classification: Classification,
        now: datetime,
        step: ConversationStep,
        timeout: float,
        prompt: str,
    ) -> Decision:
        if new.attempt_count >= self.max_attempts:
            return self._escalate(new, now, classification)

        new.attempt_count += 1
        new.enter(step, now, timeout)
        effects: list[SideEffect] = []
        self._say(effects, new.channel_id, prompt)
        return Decision(state=new, effects=effects, degraded=classification.degraded)

    def _escalate(
        self,
        new: ConversationState,
        now: datetime,
        classification: Classification,
    ) -> Decision:
        attempts = new.attempt_count
        new.reset(now)
        effects: list[SideEffect] = []
        self._say(effects, new.channel_id, ESCALATION_MESSAGE)
        effects.append(
            NotifyStaff(
                new.user_id,
                f"Conversation stalled after {attempts} clarification attempts "
                f"(last intent {classification.intent.value})",
            )
        )
        logger.info("Escalated %s after %d attempts", new.user_id, attempts)
        return Decision(
            state=new,
            effects=effects,
            escalated=True,
            degraded=classification.degraded,
        )

    @staticmethod
    def _say(effects: list[SideEffect], channel_id: str | None, text: str) -> None:
        if channel_id and text:
            effects.append(SendMessage(channel_id, text))
