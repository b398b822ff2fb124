"""Periodic deletion of abandoned onboarding channels."""

import asyncio
from datetime import datetime, timedelta, timezone

from ..config import Settings
from ..logging_config import get_logger
from ..models import ConversationStep
from ..storage import IStorage
from ..dialogue import ConversationService, SideEffectRunner

logger = get_logger(__name__)


class ChannelCleanupJob:
    """Deletes private channels of applicants idle for longer than the cutoff.

    Conversations inside a sub-workflow are left for that workflow to close.
    """

    def __init__(
        self,
        storage: IStorage,
        conversations: ConversationService,
        runner: SideEffectRunner,
        settings: Settings | None = None,
    ):
        self._storage = storage
        self._conversations = conversations
        self._runner = runner
        self._settings = settings or Settings()
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self, now: datetime | None = None) -> int:
        """One sweep. Returns the number of channels removed."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=self._settings.cleanup_inactivity)
        removed = 0

        for applicant in await self._storage.list_inactive_applicants(cutoff):
            state = applicant.conversation
            if state is not None and state.current_step in (
                ConversationStep.VOUCH_ACTIVE,
                ConversationStep.APPLICATION_ACTIVE,
            ):
                continue

            ok, _ = await self._runner.run(
                applicant.user_id,
                self._runner.platform.delete_channel(
                    applicant.channel_id, "Inactive onboarding channel"
                ),
            )
            if not ok:
                continue

            await self._conversations.reset_conversation(applicant.user_id)
            applicant.channel_id = None
            await self._runner.save_applicant(applicant)
            removed += 1
            await self._runner.trace(
                "channel_cleaned_up", {"user_id": applicant.user_id}
            )

        if removed:
            logger.info("Cleaned up %d inactive channel(s)", removed)
        return removed

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.cleanup_interval)
            try:
                await self.run_once()
            except Exception as e:
                logger.error("Channel cleanup failed: %s", e, exc_info=True)
