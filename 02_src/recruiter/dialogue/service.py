"""Conversation service: runs engine decisions against the outside world.

Every turn for a user runs under that user's lock. A decision is applied
in a fixed order: persist the new state, run its side effects, then arm
the waiter the persisted state names.
"""

import asyncio
import re
from dataclasses import replace
from datetime import datetime, timezone
from typing import Coroutine, Protocol

from ..config import Settings
from ..errors import PlatformActionError
from ..logging_config import get_logger
from ..models import (
    ApplicationStatus,
    Classification,
    CommunityStatus,
    ConversationState,
    ConversationStep,
    InboundMessage,
    Intent,
    TurnRecord,
    WaiterKind,
)
from ..storage import IStorage
from ..waiter import TurnWaiter, WaiterRegistry, WaiterStatus
from ..llm import IIntentClassifier
from .dedup import RecentMessageCache
from .effects import Decision, NotifyStaff, SendMessage, StartVouch
from .engine import DialogueEngine
from .runner import SideEffectRunner

logger = get_logger(__name__)

_MENTION_RE = re.compile(r"<@!?(\d+)>")
_AT_NAME_RE = re.compile(r"(?<![\w<])@([\w][\w.\-]{1,31})")

VOUCH_ACK = "Thanks! I'll ask {name} to confirm they can vouch for you."
APPLICATION_INTRO = (
    "Let's get your application started. Tell me a little about yourself: "
    "what you play, when you're usually online, and what you're looking for "
    "in a guild."
)
APPLICATION_CHANNEL_NOTE = "Your application is open in <#{channel}>. See you there!"
APPLICATION_CLOSED = "Thanks, your application has been recorded. A recruiter will be in touch."


class IVouchStarter(Protocol):
    """The part of the vouch coordinator the service drives."""

    async def initiate(
        self,
        subject_id: str,
        voucher_id: str,
        channel_id: str,
        original_text: str = "",
    ) -> bool:
        ...


def extract_mention(text: str) -> str | None:
    """First @mention in a message: a platform mention or a plain @name."""
    match = _MENTION_RE.search(text)
    if match:
        return match.group(1)
    match = _AT_NAME_RE.search(text)
    return match.group(1) if match else None


class ConversationService:
    """Processes user turns and waiter expiries for every conversation."""

    def __init__(
        self,
        storage: IStorage,
        classifier: IIntentClassifier,
        engine: DialogueEngine,
        waiters: WaiterRegistry,
        runner: SideEffectRunner,
        settings: Settings | None = None,
        vouch: IVouchStarter | None = None,
    ):
        self._storage = storage
        self._classifier = classifier
        self._engine = engine
        self._waiters = waiters
        self._runner = runner
        self._settings = settings or Settings()
        self._vouch = vouch
        self._recent = RecentMessageCache(self._settings.dedup_window)
        self._tasks: set[asyncio.Task] = set()
        self._classifier_failures = 0
        self._classifier_outage_reported = False

    def attach_vouch(self, vouch: IVouchStarter) -> None:
        self._vouch = vouch

    @property
    def waiters(self) -> WaiterRegistry:
        return self._waiters

    # Turns

    async def process_turn(
        self,
        message: InboundMessage,
        history: list[TurnRecord] | None = None,
    ) -> bool:
        """Process one user message. Returns False when it was skipped.

        `history` is the reconstructed turn log, when the caller already has
        one; otherwise it is read from the store.
        """
        async with self._waiters.lock(message.author_id):
            return await self._process_locked(message, history)

    async def _process_locked(
        self,
        message: InboundMessage,
        history: list[TurnRecord] | None,
    ) -> bool:
        user_id = message.author_id

        if self._recent.seen(message.message_id):
            logger.info("Skipping redelivered message %s", message.message_id)
            return False

        state = await self._storage.get_conversation_state(user_id)
        if state is None:
            logger.info("No conversation for %s, ignoring message", user_id)
            return False
        if state.last_processed_message_id == message.message_id:
            logger.info("Message %s already processed", message.message_id)
            return False
        if not state.expects_input:
            logger.debug(
                "Not expecting input from %s in step %s",
                user_id,
                state.current_step.value,
            )
            return False

        self._recent.add(message.message_id)

        appended = await self._runner.record_turn(
            TurnRecord(
                user_id=user_id,
                channel_id=message.channel_id,
                author="user",
                content=message.content,
                timestamp=message.timestamp,
                external_message_id=message.message_id,
            )
        )
        if not appended and await self._already_handled(state, message.message_id):
            logger.info(
                "Message %s predates the last processed turn, skipping",
                message.message_id,
                extra={"user_id": user_id, "message_id": message.message_id},
            )
            return False

        claimed = await self._runner.store(
            "mark_message_processed",
            user_id,
            lambda: self._storage.mark_message_processed(
                user_id, state.last_processed_message_id, message.message_id
            ),
            True,
        )
        if not claimed:
            logger.info("Message %s claimed by a concurrent turn", message.message_id)
            return False

        now = datetime.now(timezone.utc)
        await self._runner.touch_activity(user_id, now)
        state = replace(state, last_processed_message_id=message.message_id)

        if history is None:
            history = await self._storage.get_turns(
                user_id, limit=self._settings.history_limit
            )
        entries = [
            turn.as_history_entry()
            for turn in history
            if turn.external_message_id != message.message_id
        ]

        classification = await self._classifier.classify_or_fallback(
            message.content, entries
        )
        await self._watch_classifier_health(user_id, classification)
        classification = await self._resolve_voucher(state, message, classification)

        decision = self._engine.advance(state, classification, now)
        await self.apply(decision, classification)
        logger.info(
            "Turn %s: %s -> %s (%s)",
            message.message_id,
            state.current_step.value,
            decision.state.current_step.value,
            classification.intent.value,
            extra={
                "user_id": user_id,
                "message_id": message.message_id,
                "step": decision.state.current_step.value,
            },
        )

        await self._runner.trace(
            "turn_processed",
            {
                "user_id": user_id,
                "message_id": message.message_id,
                "from_step": state.current_step.value,
                "to_step": decision.state.current_step.value,
                "intent": classification.intent.value,
                "degraded": decision.degraded,
                "attempt_count": decision.state.attempt_count,
            },
        )
        if decision.degraded:
            await self._runner.trace(
                "degraded_turn",
                {"user_id": user_id, "error": classification.error},
            )
        if decision.escalated:
            await self._mark_escalated(user_id)
        return True

    async def _already_handled(self, state: ConversationState, message_id: str) -> bool:
        """True if a logged message is at or before the last processed one.

        Backfilled messages newer than that are still unclaimed.
        """
        if not state.last_processed_message_id:
            return False
        logged = {
            turn.external_message_id: turn.timestamp
            for turn in await self._storage.get_turns(state.user_id)
            if turn.external_message_id
        }
        cutoff = logged.get(state.last_processed_message_id)
        seen_at = logged.get(message_id)
        return cutoff is not None and seen_at is not None and seen_at <= cutoff

    async def _watch_classifier_health(
        self, user_id: str, classification: Classification
    ) -> None:
        if not classification.degraded:
            self._classifier_failures = 0
            self._classifier_outage_reported = False
            return

        self._classifier_failures += 1
        threshold = self._settings.classifier_failure_threshold
        unavailable = classification.error == "ClassifierUnavailable"
        if self._classifier_outage_reported:
            return
        if unavailable or self._classifier_failures >= threshold:
            self._classifier_outage_reported = True
            logger.error(
                "Intent classifier failing (%s, %d consecutive)",
                classification.error,
                self._classifier_failures,
            )
            await self._runner.notify_staff(
                user_id,
                f"Intent classifier is failing ({classification.error}); "
                "conversations are running on fallback replies",
            )

    async def _resolve_voucher(
        self,
        state: ConversationState,
        message: InboundMessage,
        classification: Classification,
    ) -> Classification:
        """Turn a vouch reference into a member id, when there is one."""
        awaiting_mention = state.current_step is ConversationStep.AWAITING_VOUCH_MENTION
        if classification.intent is not Intent.COMMUNITY_INTEREST_VOUCH and not awaiting_mention:
            return classification

        reference = classification.vouch_person_name
        if not reference and awaiting_mention:
            reference = extract_mention(message.content)
        if not reference:
            return classification

        try:
            voucher_id = await self._runner.platform.resolve_member(reference)
        except PlatformActionError as e:
            logger.warning("Could not resolve voucher %r: %s", reference, e)
            voucher_id = None

        if not voucher_id or voucher_id == state.user_id:
            if classification.intent is Intent.COMMUNITY_INTEREST_VOUCH:
                return replace(
                    classification,
                    entities={**classification.entities, "vouch_person_name": reference},
                )
            return classification

        entities = {
            **classification.entities,
            "vouch_person_name": reference,
            "original_vouch_text": classification.entities.get("original_vouch_text")
            or message.content,
        }
        reply = classification.suggested_reply
        if classification.intent is not Intent.COMMUNITY_INTEREST_VOUCH or classification.degraded:
            reply = VOUCH_ACK.format(name=reference)
        return replace(
            classification,
            intent=Intent.COMMUNITY_INTEREST_VOUCH,
            requires_clarification=False,
            suggested_reply=reply,
            entities=entities,
            voucher_id=voucher_id,
        )

    async def _mark_escalated(self, user_id: str) -> None:
        applicant = await self._storage.get_applicant(user_id)
        if applicant is not None and applicant.community_status is CommunityStatus.PENDING:
            applicant.community_status = CommunityStatus.ESCALATED
            await self._runner.save_applicant(applicant)
        await self._runner.trace("escalated", {"user_id": user_id})

    # Decisions

    async def apply(
        self,
        decision: Decision,
        classification: Classification | None = None,
    ) -> None:
        """Persist, run side effects, then arm the persisted waiter.

        Callers must hold the user's lock.
        """
        state = decision.state
        await self._runner.persist_state(state)

        output = classification.to_dict() if classification else None
        for effect in decision.effects:
            if isinstance(effect, SendMessage):
                await self._runner.say(
                    state.user_id, effect.channel_id, effect.content, output
                )
            elif isinstance(effect, NotifyStaff):
                await self._runner.notify_staff(effect.user_id, effect.reason)
            elif isinstance(effect, StartVouch):
                if self._vouch is None:
                    raise RuntimeError("Vouch coordinator not attached")
                await self._vouch.initiate(
                    effect.subject_id,
                    effect.voucher_id,
                    effect.channel_id,
                    effect.original_text,
                )

        self.arm_waiter(state)

    def arm_waiter(self, state: ConversationState) -> TurnWaiter | None:
        """Arm the message waiter `state` names, replacing any other.

        Reaction waiters belong to the vouch coordinator and are left alone.
        """
        kind = state.active_waiter_kind
        if kind is WaiterKind.VOUCH_REACTION:
            return None
        if kind is WaiterKind.NONE or not state.channel_id or state.timeout_at is None:
            self._waiters.disarm(state.user_id)
            return None

        waiter = TurnWaiter(state.user_id, state.channel_id, kind, state.timeout_at)
        self._waiters.arm(waiter)
        self._spawn(self._watch(waiter))
        logger.debug(
            "Armed %s waiter for %s until %s",
            kind.value,
            state.user_id,
            state.timeout_at.isoformat(),
        )
        return waiter

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _watch(self, waiter: TurnWaiter) -> None:
        try:
            event = await waiter.wait()
            if waiter.status is WaiterStatus.RESOLVED and isinstance(event, InboundMessage):
                if not await self.process_turn(event):
                    await self._rearm(waiter.user_id)
            elif waiter.status is WaiterStatus.EXPIRED:
                self._waiters.discard(waiter)
                await self.expire(waiter.user_id, waiter.kind, waiter.timeout_at)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Waiter for %s failed: %s", waiter.user_id, e, exc_info=True
            )

    async def _rearm(self, user_id: str) -> None:
        async with self._waiters.lock(user_id):
            if self._waiters.get(user_id) is not None:
                return
            state = await self._storage.get_conversation_state(user_id)
            if state is not None and state.expects_input:
                self.arm_waiter(state)

    async def expire(
        self, user_id: str, kind: WaiterKind, timeout_at: datetime | None
    ) -> bool:
        """Apply a waiter timeout unless the persisted state has moved on."""
        async with self._waiters.lock(user_id):
            state = await self._storage.get_conversation_state(user_id)
            if (
                state is None
                or state.active_waiter_kind is not kind
                or state.timeout_at != timeout_at
            ):
                logger.debug("Stale %s timeout for %s ignored", kind.value, user_id)
                return False

            logger.info(
                "%s waiter expired for %s in step %s",
                kind.value,
                user_id,
                state.current_step.value,
            )
            decision = self._engine.expire(state, datetime.now(timezone.utc))
            await self.apply(decision)
            await self._runner.trace(
                "waiter_expired",
                {
                    "user_id": user_id,
                    "waiter": kind.value,
                    "step": state.current_step.value,
                },
            )
            return True

    # Lifecycle operations

    async def begin_conversation(
        self, user_id: str, channel_id: str, greeting: str | None = None
    ) -> ConversationState:
        """Greet the user and wait for their first message."""
        async with self._waiters.lock(user_id):
            state = await self._storage.get_conversation_state(user_id)
            if state is None:
                state = ConversationState(user_id=user_id)
            decision = self._engine.begin(
                state, channel_id, datetime.now(timezone.utc), greeting
            )
            await self.apply(decision)
            await self._runner.trace(
                "conversation_started",
                {"user_id": user_id, "channel_id": channel_id},
            )
            return decision.state

    async def reset_conversation(
        self, user_id: str, channel_id: str | None = None
    ) -> ConversationState:
        """Go Idle with no waiter, rebinding the channel."""
        async with self._waiters.lock(user_id):
            self._waiters.disarm(user_id)
            state = await self._storage.get_conversation_state(user_id)
            if state is None:
                state = ConversationState(user_id=user_id)
            state.reset(datetime.now(timezone.utc))
            state.channel_id = channel_id
            await self._runner.persist_state(state)
            return state

    async def start_application(
        self, user_id: str, application_channel_id: str | None = None
    ) -> ConversationState:
        """Hand the conversation to the application flow.

        With a dedicated application channel the conversation goes quiet in
        ApplicationActive; otherwise the answers are collected here.
        """
        async with self._waiters.lock(user_id):
            state = await self._storage.get_conversation_state(user_id)
            if state is None or not state.channel_id:
                raise ValueError(f"No active conversation for user {user_id}")

            now = datetime.now(timezone.utc)
            new = replace(state, attempt_count=0)
            if application_channel_id:
                new.enter(ConversationStep.APPLICATION_ACTIVE, now)
                text = APPLICATION_CHANNEL_NOTE.format(channel=application_channel_id)
            else:
                new.enter(
                    ConversationStep.AWAITING_APPLICATION_ANSWER,
                    now,
                    self._settings.general_timeout,
                )
                text = APPLICATION_INTRO

            await self.apply(Decision(state=new, effects=[SendMessage(new.channel_id, text)]))
            await self._runner.trace(
                "application_started",
                {"user_id": user_id, "channel_id": application_channel_id},
            )
            return new

    async def finish_application(
        self, user_id: str, status: ApplicationStatus
    ) -> ConversationState | None:
        """Record the application outcome and return the conversation to Idle."""
        async with self._waiters.lock(user_id):
            applicant = await self._storage.get_applicant(user_id)
            if applicant is not None:
                applicant.application_status = status
                await self._runner.save_applicant(applicant)

            state = await self._storage.get_conversation_state(user_id)
            if state is None:
                return None

            new = replace(state)
            new.reset(datetime.now(timezone.utc))
            effects = []
            if new.channel_id and state.current_step in (
                ConversationStep.APPLICATION_ACTIVE,
                ConversationStep.AWAITING_APPLICATION_ANSWER,
            ):
                effects.append(SendMessage(new.channel_id, APPLICATION_CLOSED))
            await self.apply(Decision(state=new, effects=effects))
            await self._runner.trace(
                "application_finished", {"user_id": user_id, "status": status.value}
            )
            return new

    async def stop(self) -> None:
        """Cancel waiters and their watch tasks."""
        self._waiters.cancel_all()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
