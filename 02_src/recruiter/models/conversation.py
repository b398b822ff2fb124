"""Conversation state machine data models."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum


class ConversationStep(str, Enum):
    """Where a user's conversation currently is."""

    IDLE = "idle"
    AWAITING_INITIAL_MESSAGE = "awaiting_initial_message"
    AWAITING_CLARIFICATION = "awaiting_clarification"
    AWAITING_VOUCH_MENTION = "awaiting_vouch_mention"
    AWAITING_APPLICATION_ANSWER = "awaiting_application_answer"
    GENERAL_LISTENING = "general_listening"
    VOUCH_ACTIVE = "vouch_active"
    APPLICATION_ACTIVE = "application_active"


class WaiterKind(str, Enum):
    """Which waiter, if any, is armed for a user."""

    NONE = "none"
    INITIAL_RESPONSE = "initial_response"
    CLARIFICATION = "clarification"
    VOUCH_MENTION = "vouch_mention"
    VOUCH_REACTION = "vouch_reaction"
    GENERAL = "general"


# Single source of truth for which waiter a step arms.
STEP_WAITERS: dict[ConversationStep, WaiterKind] = {
    ConversationStep.IDLE: WaiterKind.NONE,
    ConversationStep.AWAITING_INITIAL_MESSAGE: WaiterKind.INITIAL_RESPONSE,
    ConversationStep.AWAITING_CLARIFICATION: WaiterKind.CLARIFICATION,
    ConversationStep.AWAITING_VOUCH_MENTION: WaiterKind.VOUCH_MENTION,
    ConversationStep.AWAITING_APPLICATION_ANSWER: WaiterKind.GENERAL,
    ConversationStep.GENERAL_LISTENING: WaiterKind.GENERAL,
    ConversationStep.VOUCH_ACTIVE: WaiterKind.VOUCH_REACTION,
    ConversationStep.APPLICATION_ACTIVE: WaiterKind.NONE,
}

# Steps whose inbound messages are owned by a sub-workflow, not the engine.
SUB_WORKFLOW_STEPS: dict[ConversationStep, str] = {
    ConversationStep.VOUCH_ACTIVE: "vouch",
    ConversationStep.APPLICATION_ACTIVE: "application",
}


@dataclass
class ConversationState:
    """Persistent per-user conversation state."""

    user_id: str
    channel_id: str | None = None
    current_step: ConversationStep = ConversationStep.IDLE
    active_waiter_kind: WaiterKind = WaiterKind.NONE
    step_entry_time: datetime | None = None
    timeout_at: datetime | None = None
    attempt_count: int = 0
    last_intent: str | None = None
    last_processed_message_id: str | None = None
    vouch_initiator_id: str | None = None
    vouch_prompt_message_id: str | None = None

    def enter(
        self,
        step: ConversationStep,
        now: datetime,
        timeout: float | None = None,
    ) -> None:
        """Move to `step`, arming the waiter the step requires.

        `timeout` (seconds) is required for steps that arm a waiter and
        ignored for the others.
        """
        kind = STEP_WAITERS[step]
        if kind is not WaiterKind.NONE and timeout is None:
            raise ValueError(f"Step {step.value} arms a waiter and needs a timeout")

        self.current_step = step
        self.active_waiter_kind = kind
        self.step_entry_time = now
        self.timeout_at = (
            now + timedelta(seconds=timeout) if kind is not WaiterKind.NONE else None
        )
        if step is not ConversationStep.VOUCH_ACTIVE:
            self.vouch_initiator_id = None
            self.vouch_prompt_message_id = None

    def reset(self, now: datetime) -> None:
        """Return to Idle with no waiter and a fresh attempt counter."""
        self.enter(ConversationStep.IDLE, now)
        self.attempt_count = 0

    @property
    def has_waiter(self) -> bool:
        return self.active_waiter_kind is not WaiterKind.NONE

    @property
    def sub_workflow(self) -> str | None:
        """Name of the sub-workflow owning this conversation, if any."""
        return SUB_WORKFLOW_STEPS.get(self.current_step)

    @property
    def expects_input(self) -> bool:
        """Whether the engine is waiting on free-form user input."""
        return self.has_waiter and self.sub_workflow is None

    def is_consistent(self) -> bool:
        """Check the single-waiter invariant."""
        if STEP_WAITERS[self.current_step] is not self.active_waiter_kind:
            return False
        return (self.timeout_at is not None) == self.has_waiter
