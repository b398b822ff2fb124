"""Failure policy for side effects: platform actions, state writes, tracing."""

from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar

from ..errors import PersistenceError, PlatformActionError
from ..logging_config import get_logger
from ..models import ApplicantRecord, ConversationState, TurnRecord
from ..platform import IChatPlatform
from ..storage import IStorage
from ..tracker import ITracker

logger = get_logger(__name__)

T = TypeVar("T")

APOLOGY = (
    "Sorry, something went wrong on my side. I've let the staff know and a "
    "human will help you shortly."
)


class SideEffectRunner:
    """Runs side effects so that failures are reported, never silently lost.

    Platform failures are logged, traced and sent to staff. Store writes are
    retried once; a second failure is logged as a consistency warning and
    the caller carries on.
    """

    def __init__(
        self,
        platform: IChatPlatform,
        storage: IStorage,
        tracker: ITracker,
        actor: str = "conversation",
    ):
        self._platform = platform
        self._storage = storage
        self._tracker = tracker
        self._actor = actor
        self.consistency_warnings = 0

    @property
    def platform(self) -> IChatPlatform:
        return self._platform

    async def trace(self, event_type: str, data: dict) -> None:
        """Record a TraceEvent; tracing never breaks a turn."""
        try:
            await self._tracker.track(event_type, self._actor, data)
        except PersistenceError as e:
            logger.warning("Could not record trace event %s: %s", event_type, e)

    async def store(
        self,
        what: str,
        user_id: str,
        operation: Callable[[], Awaitable[T]],
        default: T,
    ) -> T:
        """Run a store operation, retrying once before giving up."""
        try:
            return await operation()
        except PersistenceError as e:
            logger.warning("Store %s failed for %s, retrying: %s", what, user_id, e)

        try:
            return await operation()
        except PersistenceError as e:
            self.consistency_warnings += 1
            logger.error(
                "Consistency warning: %s failed twice for %s: %s",
                what,
                user_id,
                e,
                extra={"user_id": user_id, "action": what},
            )
            await self.trace(
                "consistency_warning",
                {"user_id": user_id, "operation": what, "error": str(e)},
            )
            return default

    async def persist_state(self, state: ConversationState) -> bool:
        """Save conversation state (retried once)."""
        async def save() -> bool:
            await self._storage.save_conversation_state(state)
            return True

        return await self.store("save_conversation_state", state.user_id, save, False)

    async def save_applicant(self, applicant: ApplicantRecord) -> bool:
        """Save an applicant profile (retried once)."""
        async def save() -> bool:
            await self._storage.save_applicant(applicant)
            return True

        return await self.store("save_applicant", applicant.user_id, save, False)

    async def record_turn(self, turn: TurnRecord) -> bool:
        """Append to the turn log; False when it was already there."""
        return await self.store(
            "append_turn", turn.user_id, lambda: self._storage.append_turn(turn), False
        )

    async def run(
        self,
        user_id: str,
        action: Awaitable[T],
        apology_channel: str | None = None,
    ) -> tuple[bool, T | None]:
        """Await a platform action; on failure report it and return (False, None)."""
        try:
            return True, await action
        except PlatformActionError as e:
            await self.report_failure(user_id, e, apology_channel)
            return False, None

    async def say(
        self,
        user_id: str,
        channel_id: str,
        content: str,
        classifier_output: dict | None = None,
    ) -> str | None:
        """Send an agent message and log it as a turn."""
        try:
            message_id = await self._platform.send_message(channel_id, content)
        except PlatformActionError as e:
            await self.report_failure(user_id, e)
            return None

        await self.record_turn(
            TurnRecord(
                user_id=user_id,
                channel_id=channel_id,
                author="agent",
                content=content,
                timestamp=datetime.now(timezone.utc),
                external_message_id=message_id,
                classifier_output=classifier_output,
            )
        )
        return message_id

    async def notify_staff(self, user_id: str, reason: str) -> bool:
        """Post to the staff channel."""
        try:
            await self._platform.notify_staff(f"[user {user_id}] {reason}")
        except PlatformActionError as e:
            logger.error(
                "Staff notification failed for %s (%s): %s", user_id, reason, e
            )
            await self.trace(
                "platform_action_failed",
                {"user_id": user_id, "action": e.action, "error": str(e)},
            )
            return False

        await self.trace("staff_notified", {"user_id": user_id, "reason": reason})
        return True

    async def report_failure(
        self,
        user_id: str,
        error: PlatformActionError,
        apology_channel: str | None = None,
    ) -> None:
        """Log, trace and escalate a failed platform action."""
        logger.error(
            "Platform action %s failed for %s: %s",
            error.action,
            user_id,
            error,
            extra={
                "user_id": user_id,
                "action": error.action,
                "context": {"transient": error.transient},
            },
        )
        await self.trace(
            "platform_action_failed",
            {
                "user_id": user_id,
                "action": error.action,
                "transient": error.transient,
                "error": str(error),
            },
        )
        await self.notify_staff(user_id, f"Platform action {error.action} failed: {error}")

        if apology_channel and error.action != "send_message":
            await self._send_apology(user_id, apology_channel)

    async def _send_apology(self, user_id: str, channel_id: str) -> None:
        try:
            await self._platform.send_message(channel_id, APOLOGY)
        except PlatformActionError as e:
            logger.error("Could not send apology to %s: %s", user_id, e)

    async def touch_activity(self, user_id: str, at: datetime) -> None:
        await self.store(
            "touch_activity",
            user_id,
            lambda: self._storage.touch_activity(user_id, at),
            None,
        )
