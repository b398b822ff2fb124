"""Rehydration: conversations that outlive their in-memory waiter.

Any message that reaches a tracked channel without a live waiter is routed
here. The turn log is rebuilt from the store plus the channel's recent
messages, and the message is processed as a normal turn. On startup the
same reconciliation runs for every persisted conversation that had a
waiter armed.
"""

from datetime import datetime, timezone

from ..config import Settings
from ..errors import PlatformActionError
from ..logging_config import get_logger
from ..models import (
    ChannelMessage,
    ConversationState,
    ConversationStep,
    InboundMessage,
    TurnRecord,
)
from ..storage import IStorage
from ..waiter import WaiterRegistry
from ..dialogue import ConversationService, SideEffectRunner
from ..vouch import VouchCoordinator

logger = get_logger(__name__)


class RehydrationService:
    """Catches messages that no waiter is holding and replays missed ones."""

    def __init__(
        self,
        storage: IStorage,
        conversations: ConversationService,
        vouch: VouchCoordinator,
        waiters: WaiterRegistry,
        runner: SideEffectRunner,
        settings: Settings | None = None,
    ):
        self._storage = storage
        self._conversations = conversations
        self._vouch = vouch
        self._waiters = waiters
        self._runner = runner
        self._platform = runner.platform
        self._settings = settings or Settings()

    async def on_inbound_message(self, message: InboundMessage) -> bool:
        """Route one inbound message. True if a turn took it."""
        if message.is_bot or not message.content.strip():
            return False

        applicant = await self._storage.find_applicant_by_channel(message.channel_id)
        if applicant is None or applicant.user_id != message.author_id:
            return False

        state = applicant.conversation
        if state is None:
            return False
        if state.last_processed_message_id == message.message_id:
            logger.info("Message %s already processed", message.message_id)
            return False

        await self._runner.touch_activity(applicant.user_id, datetime.now(timezone.utc))

        if self._waiters.offer(message) is not None:
            return True

        if not state.expects_input:
            logger.debug(
                "Message from %s in step %s needs no turn",
                applicant.user_id,
                state.current_step.value,
            )
            return False

        logger.info(
            "Rehydrating conversation for %s in step %s",
            applicant.user_id,
            state.current_step.value,
        )
        history = await self.reconstruct_history(
            applicant.user_id, message.channel_id, exclude=message.message_id
        )
        await self._runner.trace(
            "conversation_rehydrated",
            {
                "user_id": applicant.user_id,
                "step": state.current_step.value,
                "history_length": len(history),
            },
        )
        return await self._conversations.process_turn(message, history)

    async def reconstruct_history(
        self,
        user_id: str,
        channel_id: str,
        exclude: str | None = None,
    ) -> list[TurnRecord]:
        """Stored turns merged with channel messages the store has not seen.

        Channel-only messages are backfilled into the turn log. `exclude`
        names the message being processed, which is left out.
        """
        limit = self._settings.history_limit
        stored = await self._storage.get_turns(user_id, limit=limit)
        channel_log = await self._fetch_channel_log(user_id, channel_id)

        known = {turn.external_message_id for turn in stored if turn.external_message_id}
        merged = list(stored)
        for entry in channel_log:
            if entry.message_id in known or entry.message_id == exclude:
                continue
            turn = self._as_turn(user_id, entry)
            if turn is None:
                continue
            await self._runner.record_turn(turn)
            merged.append(turn)
            known.add(entry.message_id)

        merged.sort(key=lambda turn: turn.timestamp)
        return [turn for turn in merged if turn.external_message_id != exclude][-limit:]

    async def _fetch_channel_log(
        self, user_id: str, channel_id: str
    ) -> list[ChannelMessage]:
        try:
            return await self._platform.fetch_recent_messages(
                channel_id, limit=self._settings.history_limit
            )
        except PlatformActionError as e:
            logger.warning(
                "Channel log unavailable for %s, using stored turns only: %s",
                user_id,
                e,
            )
            await self._runner.trace(
                "platform_action_failed",
                {"user_id": user_id, "action": e.action, "error": str(e)},
            )
            return []

    @staticmethod
    def _as_turn(user_id: str, entry: ChannelMessage) -> TurnRecord | None:
        if entry.is_bot:
            author = "agent"
        elif entry.author_id == user_id:
            author = "user"
        else:
            return None
        return TurnRecord(
            user_id=user_id,
            channel_id=entry.channel_id,
            author=author,
            content=entry.content,
            timestamp=entry.timestamp,
            external_message_id=entry.message_id,
        )

    async def reconcile(self, user_id: str) -> bool:
        """Process the newest user message sent while nothing was listening.

        Older unseen messages are backfilled as history. True if a turn ran.
        """
        state = await self._storage.get_conversation_state(user_id)
        if state is None or not state.expects_input or not state.channel_id:
            return False

        channel_log = await self._fetch_channel_log(user_id, state.channel_id)
        cutoff = await self._processed_cutoff(state)
        unseen = [
            entry
            for entry in channel_log
            if entry.author_id == user_id
            and not entry.is_bot
            and entry.content.strip()
            and entry.message_id != state.last_processed_message_id
            and (cutoff is None or entry.timestamp > cutoff)
        ]
        if not unseen:
            return False

        newest = unseen[-1]
        logger.info(
            "Reconciling %d unseen message(s) for %s", len(unseen), user_id
        )
        history = await self.reconstruct_history(
            user_id, state.channel_id, exclude=newest.message_id
        )
        message = InboundMessage(
            message_id=newest.message_id,
            channel_id=newest.channel_id,
            author_id=user_id,
            content=newest.content,
            timestamp=newest.timestamp,
        )
        return await self._conversations.process_turn(message, history)

    async def _processed_cutoff(self, state: ConversationState) -> datetime | None:
        if state.last_processed_message_id:
            for turn in await self._storage.get_turns(state.user_id):
                if turn.external_message_id == state.last_processed_message_id:
                    return turn.timestamp
        return state.step_entry_time

    async def resume(self) -> int:
        """Re-arm or settle every persisted waiter. Returns how many were handled."""
        states = await self._storage.list_armed_states()
        now = datetime.now(timezone.utc)
        handled = 0
        for state in states:
            try:
                await self._resume_one(state, now)
                handled += 1
            except Exception as e:
                logger.error(
                    "Could not resume conversation for %s: %s",
                    state.user_id,
                    e,
                    exc_info=True,
                )
        logger.info("Resumed %d of %d armed conversation(s)", handled, len(states))
        return handled

    async def _resume_one(self, state: ConversationState, now: datetime) -> None:
        if state.current_step is ConversationStep.VOUCH_ACTIVE:
            await self._vouch.resume(state)
            return

        if await self.reconcile(state.user_id):
            return

        if state.timeout_at is not None and state.timeout_at <= now:
            await self._conversations.expire(
                state.user_id, state.active_waiter_kind, state.timeout_at
            )
        else:
            self._conversations.arm_waiter(state)
