"""Vouch coordinator.

Asks an existing member to confirm a newcomer with a reaction, then
settles the outcome: accepted, declined or timed out. Exactly one outcome
runs per vouch; each ends with the private channel deleted and the
conversation back to Idle.
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from enum import Enum
from typing import Coroutine

from ..config import Settings
from ..logging_config import get_logger
from ..models import (
    CommunityStatus,
    ConversationState,
    ConversationStep,
    ReactionEvent,
    WaiterKind,
)
from ..platform import MEMBER_CHANNEL_PERMISSIONS
from ..storage import IStorage
from ..waiter import TurnWaiter, WaiterRegistry, WaiterStatus
from ..dialogue.runner import SideEffectRunner

logger = get_logger(__name__)

THUMBS_UP = "👍"
THUMBS_DOWN = "👎"

VOUCH_PROMPT = (
    "<@{voucher}>, <@{subject}> says you can vouch for them"
    "{quote}. React with {up} to vouch or {down} if you can't."
)
ACCEPTED_MESSAGE = "🎉 <@{voucher}> has vouched for <@{subject}>! Welcome to the community."
ROLE_GRANTED_MESSAGE = "<@{subject}> now has the **{role}** role."
DECLINED_MESSAGE = (
    "<@{voucher}> couldn't vouch for you this time. A recruiter will follow up "
    "with you."
)
TIMED_OUT_MESSAGE = (
    "We didn't hear back from <@{voucher}> in time. A recruiter will follow up "
    "with you."
)
START_FAILED_MESSAGE = (
    "Sorry, I couldn't reach <@{voucher}> right now. I've let the staff know "
    "and someone will help you shortly."
)

_CLOSE_REASON = "Vouch completed"


class VouchOutcome(str, Enum):
    ACCEPTED = "accepted"
    DECLINED = "declined"
    TIMED_OUT = "timed_out"


_COMMUNITY_STATUS = {
    VouchOutcome.ACCEPTED: CommunityStatus.VOUCH_ACCEPTED,
    VouchOutcome.DECLINED: CommunityStatus.VOUCH_DENIED,
    VouchOutcome.TIMED_OUT: CommunityStatus.VOUCH_TIMEOUT,
}


class VouchCoordinator:
    """Runs the vouch sub-workflow for conversations in VouchActive."""

    def __init__(
        self,
        storage: IStorage,
        waiters: WaiterRegistry,
        runner: SideEffectRunner,
        settings: Settings | None = None,
    ):
        self._storage = storage
        self._waiters = waiters
        self._runner = runner
        self._platform = runner.platform
        self._settings = settings or Settings()
        self._tasks: set[asyncio.Task] = set()

    async def initiate(
        self,
        subject_id: str,
        voucher_id: str,
        channel_id: str,
        original_text: str = "",
    ) -> bool:
        """Let the voucher into the channel and post the reaction prompt.

        Called while holding the subject's lock, after the VouchActive state
        has been persisted.
        """
        state = await self._storage.get_conversation_state(subject_id)
        if state is None or state.current_step is not ConversationStep.VOUCH_ACTIVE:
            logger.warning("Vouch for %s requested outside VouchActive", subject_id)
            return False

        ok, _ = await self._runner.run(
            subject_id,
            self._platform.set_channel_permissions(
                channel_id, voucher_id, MEMBER_CHANNEL_PERMISSIONS
            ),
        )
        prompt_id = None
        if ok:
            quote = f': "{original_text.strip()}"' if original_text.strip() else ""
            ok, prompt_id = await self._runner.run(
                subject_id,
                self._platform.post_reaction_prompt(
                    channel_id,
                    VOUCH_PROMPT.format(
                        voucher=voucher_id,
                        subject=subject_id,
                        quote=quote,
                        up=THUMBS_UP,
                        down=THUMBS_DOWN,
                    ),
                    [THUMBS_UP, THUMBS_DOWN],
                ),
            )

        if not ok or not prompt_id:
            await self._abort(state, voucher_id)
            return False

        state.vouch_initiator_id = voucher_id
        state.vouch_prompt_message_id = prompt_id
        await self._runner.persist_state(state)
        self._arm(state)

        logger.info("Vouch started for %s by %s", subject_id, voucher_id)
        await self._runner.trace(
            "vouch_started",
            {
                "user_id": subject_id,
                "voucher_id": voucher_id,
                "prompt_message_id": prompt_id,
            },
        )
        return True

    async def _abort(self, state: ConversationState, voucher_id: str) -> None:
        if state.channel_id:
            await self._runner.say(
                state.user_id,
                state.channel_id,
                START_FAILED_MESSAGE.format(voucher=voucher_id),
            )
        new = replace(state)
        new.reset(datetime.now(timezone.utc))
        await self._runner.persist_state(new)
        self._waiters.disarm(state.user_id)
        await self._runner.trace(
            "vouch_failed", {"user_id": state.user_id, "voucher_id": voucher_id}
        )

    def _arm(self, state: ConversationState) -> TurnWaiter:
        voucher_id = state.vouch_initiator_id
        prompt_id = state.vouch_prompt_message_id

        def is_verdict(event: ReactionEvent) -> bool:
            return (
                event.message_id == prompt_id
                and event.user_id == voucher_id
                and event.emoji in (THUMBS_UP, THUMBS_DOWN)
            )

        waiter = TurnWaiter(
            state.user_id,
            state.channel_id,
            WaiterKind.VOUCH_REACTION,
            state.timeout_at,
            predicate=is_verdict,
        )
        self._waiters.arm(waiter)
        self._spawn(self._watch(waiter, prompt_id))
        return waiter

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _watch(self, waiter: TurnWaiter, prompt_id: str) -> None:
        try:
            event = await waiter.wait()
            if waiter.status is WaiterStatus.RESOLVED:
                outcome = (
                    VouchOutcome.ACCEPTED
                    if event.emoji == THUMBS_UP
                    else VouchOutcome.DECLINED
                )
            elif waiter.status is WaiterStatus.EXPIRED:
                self._waiters.discard(waiter)
                outcome = VouchOutcome.TIMED_OUT
            else:
                return
            await self.settle(waiter.user_id, prompt_id, outcome)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Vouch watcher for %s failed: %s", waiter.user_id, e, exc_info=True
            )

    async def settle(
        self, subject_id: str, prompt_id: str | None, outcome: VouchOutcome
    ) -> bool:
        """Run one outcome. False if the vouch was already settled."""
        async with self._waiters.lock(subject_id):
            state = await self._storage.get_conversation_state(subject_id)
            if (
                state is None
                or state.current_step is not ConversationStep.VOUCH_ACTIVE
                or state.vouch_prompt_message_id != prompt_id
            ):
                logger.info(
                    "Vouch for %s already settled, ignoring %s",
                    subject_id,
                    outcome.value,
                )
                return False

            voucher_id = state.vouch_initiator_id
            channel_id = state.channel_id
            applicant = await self._storage.get_applicant(subject_id)

            granted_role = None
            if outcome is VouchOutcome.ACCEPTED:
                await self._say(subject_id, channel_id, ACCEPTED_MESSAGE, voucher_id)
                role = self._settings.member_role
                ok, _ = await self._runner.run(
                    subject_id, self._platform.grant_role(subject_id, role), channel_id
                )
                if ok:
                    granted_role = role
                    await self._say(
                        subject_id, channel_id, ROLE_GRANTED_MESSAGE, voucher_id, role=role
                    )
            elif outcome is VouchOutcome.DECLINED:
                await self._say(subject_id, channel_id, DECLINED_MESSAGE, voucher_id)
                await self._runner.notify_staff(
                    subject_id, f"Vouch declined by {voucher_id}"
                )
            else:
                await self._say(subject_id, channel_id, TIMED_OUT_MESSAGE, voucher_id)
                await self._runner.notify_staff(
                    subject_id, f"Vouch by {voucher_id} timed out"
                )

            if channel_id:
                await self._runner.run(
                    subject_id, self._platform.delete_channel(channel_id, _CLOSE_REASON)
                )

            if applicant is not None:
                applicant.community_status = _COMMUNITY_STATUS[outcome]
                applicant.vouched_by = voucher_id
                applicant.channel_id = None
                if granted_role:
                    applicant.role = granted_role
                await self._runner.save_applicant(applicant)

            new = replace(state, channel_id=None)
            new.reset(datetime.now(timezone.utc))
            written = await self._runner.store(
                "settle_vouch",
                subject_id,
                lambda: self._storage.compare_and_set_state(
                    new, ConversationStep.VOUCH_ACTIVE, state.last_processed_message_id
                ),
                None,
            )
            if written is False:
                # Another writer moved the conversation on; its state stands
                logger.warning(
                    "Vouch for %s lost a state race, keeping the stored state",
                    subject_id,
                    extra={"user_id": subject_id, "action": "settle_vouch"},
                )
                await self._runner.trace(
                    "vouch_state_conflict",
                    {"user_id": subject_id, "outcome": outcome.value},
                )
            else:
                self._waiters.disarm(subject_id)

            logger.info("Vouch for %s settled: %s", subject_id, outcome.value)
            await self._runner.trace(
                f"vouch_{outcome.value}",
                {"user_id": subject_id, "voucher_id": voucher_id},
            )
            return True

    async def _say(
        self,
        subject_id: str,
        channel_id: str | None,
        template: str,
        voucher_id: str | None,
        **extra,
    ) -> None:
        if channel_id:
            await self._runner.say(
                subject_id,
                channel_id,
                template.format(voucher=voucher_id, subject=subject_id, **extra),
            )

    async def resume(self, state: ConversationState) -> None:
        """Pick a persisted VouchActive conversation back up after restart."""
        user_id = state.user_id
        if state.vouch_prompt_message_id is None:
            async with self._waiters.lock(user_id):
                current = await self._storage.get_conversation_state(user_id)
                if current is None or current.current_step is not ConversationStep.VOUCH_ACTIVE:
                    return
                if current.vouch_initiator_id and current.channel_id:
                    logger.info("Re-posting vouch prompt for %s", user_id)
                    await self.initiate(
                        user_id, current.vouch_initiator_id, current.channel_id
                    )
                else:
                    await self._abort(current, current.vouch_initiator_id or "unknown")
            return

        if state.timeout_at is not None and state.timeout_at <= datetime.now(timezone.utc):
            await self.settle(user_id, state.vouch_prompt_message_id, VouchOutcome.TIMED_OUT)
            return

        self._arm(state)
        logger.info("Resumed vouch for %s", user_id)

    async def stop(self) -> None:
        """Cancel reaction watchers."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
