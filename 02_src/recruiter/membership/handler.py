"""Member join/leave handling: onboarding channels and applicant profiles."""

import re
from datetime import datetime, timezone

from ..config import Settings
from ..errors import PlatformActionError
from ..logging_config import get_logger
from ..models import (
    ApplicantRecord,
    ApplicationStatus,
    CommunityStatus,
    MemberEvent,
)
from ..platform import MEMBER_CHANNEL_PERMISSIONS
from ..storage import IStorage
from ..dialogue import ConversationService, SideEffectRunner

logger = get_logger(__name__)

WELCOME = "Hello, **{name}**, welcome to the {community} Discord!"
WELCOME_BACK = "Welcome back, **{name}**! Good to see you again."
PICK_UP = "Want to pick up where we left off?"


def channel_name(username: str, user_id: str) -> str:
    """Private channel name for a member: lowercase, dashes only."""
    slug = re.sub(r"[^a-z0-9]+", "-", username.lower()).strip("-")
    return f"processing-{slug or user_id}"


class MembershipHandler:
    """Opens a private conversation when someone joins and closes it when they leave."""

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
        self._platform = runner.platform
        self._settings = settings or Settings()

    async def on_member_joined(self, event: MemberEvent) -> ApplicantRecord:
        now = datetime.now(timezone.utc)
        applicant = await self._storage.get_applicant(event.user_id)
        returning = applicant is not None

        if applicant is None:
            applicant = ApplicantRecord(
                user_id=event.user_id,
                username=event.username or event.user_id,
                joined_at=now,
                last_activity_at=now,
            )
            role = self._settings.outsider_role
        else:
            if event.username:
                applicant.username = event.username
            if applicant.application_status is ApplicationStatus.LEFT_SERVER:
                applicant.application_status = ApplicationStatus.PENDING
            if applicant.community_status is CommunityStatus.LEFT_SERVER:
                applicant.community_status = CommunityStatus.PENDING
            applicant.last_activity_at = now
            role = applicant.role or self._settings.outsider_role

        ok, _ = await self._runner.run(
            event.user_id, self._platform.grant_role(event.user_id, role)
        )
        if ok:
            applicant.role = role

        channel_id = await self._ensure_channel(applicant)
        await self._runner.save_applicant(applicant)
        logger.info(
            "Member %s joined (%s), channel %s",
            event.user_id,
            "returning" if returning else "new",
            channel_id,
        )
        await self._runner.trace(
            "member_joined",
            {"user_id": event.user_id, "returning": returning, "channel_id": channel_id},
        )
        if channel_id is None:
            return applicant

        template = WELCOME_BACK if returning else WELCOME
        greeting = template.format(
            name=applicant.username, community=self._settings.community_name
        )
        if returning and await self._storage.get_turns(event.user_id, limit=1):
            greeting += " " + PICK_UP
        applicant.conversation = await self._conversations.begin_conversation(
            event.user_id, channel_id, greeting
        )
        return applicant

    async def _ensure_channel(self, applicant: ApplicantRecord) -> str | None:
        user_id = applicant.user_id
        if applicant.channel_id:
            try:
                await self._platform.set_channel_permissions(
                    applicant.channel_id, user_id, MEMBER_CHANNEL_PERMISSIONS
                )
                return applicant.channel_id
            except PlatformActionError as e:
                logger.warning(
                    "Stored channel %s for %s is unusable, creating a new one: %s",
                    applicant.channel_id,
                    user_id,
                    e,
                )
                applicant.channel_id = None

        ok, channel_id = await self._runner.run(
            user_id,
            self._platform.create_private_channel(
                user_id, channel_name(applicant.username, user_id)
            ),
        )
        if not ok or not channel_id:
            return None

        await self._runner.run(
            user_id,
            self._platform.set_channel_permissions(
                channel_id, user_id, MEMBER_CHANNEL_PERMISSIONS
            ),
        )
        applicant.channel_id = channel_id
        return channel_id

    async def on_member_left(self, event: MemberEvent) -> ApplicantRecord | None:
        applicant = await self._storage.get_applicant(event.user_id)
        if applicant is None:
            logger.info("Unknown member %s left", event.user_id)
            return None

        await self._conversations.reset_conversation(event.user_id)
        if applicant.channel_id:
            await self._runner.run(
                event.user_id,
                self._platform.delete_channel(applicant.channel_id, "Member left"),
            )

        applicant.channel_id = None
        applicant.application_status = ApplicationStatus.LEFT_SERVER
        applicant.community_status = CommunityStatus.LEFT_SERVER
        await self._runner.save_applicant(applicant)

        logger.info("Member %s left, conversation closed", event.user_id)
        await self._runner.trace("member_left", {"user_id": event.user_id})
        return applicant
