"""Chat-platform contract consumed by the conversation core."""

from typing import Protocol

from ..models import ChannelMessage

VIEW_CHANNEL = "view_channel"
SEND_MESSAGES = "send_messages"
READ_MESSAGE_HISTORY = "read_message_history"

MEMBER_CHANNEL_PERMISSIONS = [VIEW_CHANNEL, SEND_MESSAGES, READ_MESSAGE_HISTORY]


class IChatPlatform(Protocol):
    """Actions the core performs on the chat platform.

    Every method raises PlatformActionError when the action ultimately fails.
    """

    async def send_message(self, channel_id: str, content: str) -> str:
        """Send a text message. Returns the platform message id."""
        ...

    async def create_private_channel(self, user_id: str, name: str) -> str:
        """Create a private conversation channel. Returns the channel id."""
        ...

    async def set_channel_permissions(
        self, channel_id: str, member_id: str, allow: list[str]
    ) -> None:
        """Grant a member the listed permissions on a channel."""
        ...

    async def grant_role(self, user_id: str, role_name: str) -> None:
        """Give a member a role by name."""
        ...

    async def delete_channel(self, channel_id: str, reason: str = "") -> None:
        """Delete a channel."""
        ...

    async def post_reaction_prompt(
        self, channel_id: str, content: str, options: list[str]
    ) -> str:
        """Post a message and pre-add the reaction options. Returns the message id."""
        ...

    async def fetch_recent_messages(
        self, channel_id: str, limit: int = 50
    ) -> list[ChannelMessage]:
        """Recent channel log, oldest first."""
        ...

    async def resolve_member(self, reference: str) -> str | None:
        """Resolve an @mention or username to a member id."""
        ...

    async def notify_staff(self, content: str) -> None:
        """Post a notification to the staff channel."""
        ...
