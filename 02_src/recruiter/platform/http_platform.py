"""HTTP client for the chat-platform bridge."""

import asyncio
from datetime import datetime, timezone

import httpx

from ..errors import PlatformActionError
from ..logging_config import get_logger
from ..models import ChannelMessage

logger = get_logger(__name__)

_TRANSIENT_STATUSES = {429, 500, 502, 503, 504}


class HttpChatPlatform:
    """Talks to the platform bridge's REST API.

    Transport errors, 429 and 5xx answers are retried with linear backoff;
    anything else fails immediately.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 10.0,
        max_retries: int = 2,
        backoff: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self._max_retries = max_retries
        self._backoff = backoff

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def _request(
        self,
        action: str,
        method: str,
        path: str,
        json: dict | None = None,
        params: dict | None = None,
        headers: dict | None = None,
        allow_not_found: bool = False,
    ) -> httpx.Response | None:
        last_error = ""
        for attempt in range(self._max_retries + 1):
            try:
                response = await self._client.request(
                    method, path, json=json, params=params, headers=headers
                )
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
            else:
                if response.status_code == 404 and allow_not_found:
                    return None
                if response.status_code not in _TRANSIENT_STATUSES:
                    if response.is_error:
                        raise PlatformActionError(
                            action,
                            f"HTTP {response.status_code}: {response.text[:200]}",
                            transient=False,
                        )
                    return response
                last_error = f"HTTP {response.status_code}"

            if attempt < self._max_retries:
                logger.warning(
                    "Platform action %s failed (%s), retry %d/%d",
                    action,
                    last_error,
                    attempt + 1,
                    self._max_retries,
                )
                await asyncio.sleep(self._backoff * (attempt + 1))

        raise PlatformActionError(action, last_error, transient=True)

    async def send_message(self, channel_id: str, content: str) -> str:
        """Send a text message. Returns the platform message id."""
        response = await self._request(
            "send_message",
            "POST",
            f"/channels/{channel_id}/messages",
            json={"content": content},
        )
        return str(response.json()["id"])

    async def create_private_channel(self, user_id: str, name: str) -> str:
        """Create a private conversation channel. Returns the channel id."""
        response = await self._request(
            "create_private_channel",
            "POST",
            "/channels",
            json={"name": name, "owner_id": user_id, "private": True},
        )
        return str(response.json()["id"])

    async def set_channel_permissions(
        self, channel_id: str, member_id: str, allow: list[str]
    ) -> None:
        """Grant a member the listed permissions on a channel."""
        await self._request(
            "set_channel_permissions",
            "PUT",
            f"/channels/{channel_id}/permissions/{member_id}",
            json={"allow": allow},
        )

    async def grant_role(self, user_id: str, role_name: str) -> None:
        """Give a member a role by name."""
        await self._request(
            "grant_role",
            "PUT",
            f"/members/{user_id}/roles",
            json={"role_name": role_name},
        )

    async def delete_channel(self, channel_id: str, reason: str = "") -> None:
        """Delete a channel. A channel that is already gone counts as deleted."""
        await self._request(
            "delete_channel",
            "DELETE",
            f"/channels/{channel_id}",
            headers={"X-Audit-Reason": reason} if reason else None,
            allow_not_found=True,
        )

    async def post_reaction_prompt(
        self, channel_id: str, content: str, options: list[str]
    ) -> str:
        """Post a message and pre-add the reaction options. Returns the message id."""
        response = await self._request(
            "post_reaction_prompt",
            "POST",
            f"/channels/{channel_id}/reaction-prompts",
            json={"content": content, "options": options},
        )
        return str(response.json()["id"])

    async def fetch_recent_messages(
        self, channel_id: str, limit: int = 50
    ) -> list[ChannelMessage]:
        """Recent channel log, oldest first."""
        response = await self._request(
            "fetch_recent_messages",
            "GET",
            f"/channels/{channel_id}/messages",
            params={"limit": limit},
        )
        messages = [
            ChannelMessage(
                message_id=str(item["id"]),
                channel_id=channel_id,
                author_id=str(item["author_id"]),
                content=item.get("content", ""),
                timestamp=_parse_timestamp(item["timestamp"]),
                is_bot=bool(item.get("is_bot", False)),
            )
            for item in response.json()
        ]
        return sorted(messages, key=lambda m: m.timestamp)

    async def resolve_member(self, reference: str) -> str | None:
        """Resolve an @mention or username to a member id."""
        response = await self._request(
            "resolve_member",
            "GET",
            "/members/resolve",
            params={"query": reference},
            allow_not_found=True,
        )
        if response is None:
            return None
        member_id = response.json().get("id")
        return str(member_id) if member_id else None

    async def notify_staff(self, content: str) -> None:
        """Post a notification to the staff channel."""
        await self._request(
            "notify_staff",
            "POST",
            "/staff/notifications",
            json={"content": content},
        )


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
