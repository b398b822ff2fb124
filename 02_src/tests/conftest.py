"""Pytest configuration and fixtures."""

import asyncio
import itertools
import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, Mock

import pytest
import pytest_asyncio

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from recruiter.errors import PlatformActionError  # noqa: E402
from recruiter.models import (  # noqa: E402
    ApplicantRecord,
    ChannelMessage,
    ConversationState,
    ConversationStep,
    InboundMessage,
)


def llm_reply(
    intent: str,
    reply: str = "ok",
    requires_clarification: bool = False,
    confidence: float = 0.9,
    **entities,
) -> str:
    """Raw classifier answer as the LLM would return it."""
    return json.dumps(
        {
            "intent": intent,
            "entities": entities,
            "suggested_reply": reply,
            "confidence": confidence,
            "requires_clarification": requires_clarification,
        }
    )


async def eventually(check, timeout: float = 2.0, interval: float = 0.01):
    """Poll an async or sync check until it returns truthy."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        result = check()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return result
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


class FakeChatPlatform:
    """In-memory chat platform that records every action."""

    def __init__(self):
        self.calls: list[tuple[str, tuple]] = []
        self.sent: list[tuple[str, str]] = []
        self.staff: list[str] = []
        self.channel_logs: dict[str, list[ChannelMessage]] = {}
        self.members: dict[str, str] = {}
        self.failing: set[str] = set()
        self._ids = itertools.count(1000)

    def _record(self, action: str, *args) -> None:
        self.calls.append((action, args))
        if action in self.failing:
            raise PlatformActionError(action, "simulated failure", transient=True)

    def called(self, action: str) -> list[tuple]:
        return [args for name, args in self.calls if name == action]

    def messages_in(self, channel_id: str) -> list[str]:
        return [content for channel, content in self.sent if channel == channel_id]

    def post_user_message(
        self,
        channel_id: str,
        author_id: str,
        content: str,
        message_id: str,
        timestamp: datetime | None = None,
    ) -> InboundMessage:
        """Put a user message in the channel log and return its event."""
        timestamp = timestamp or datetime.now(timezone.utc)
        self.channel_logs.setdefault(channel_id, []).append(
            ChannelMessage(message_id, channel_id, author_id, content, timestamp)
        )
        return InboundMessage(message_id, channel_id, author_id, content, timestamp)

    async def send_message(self, channel_id: str, content: str) -> str:
        self._record("send_message", channel_id, content)
        message_id = f"bot-{next(self._ids)}"
        self.sent.append((channel_id, content))
        self.channel_logs.setdefault(channel_id, []).append(
            ChannelMessage(
                message_id,
                channel_id,
                "bot",
                content,
                datetime.now(timezone.utc),
                is_bot=True,
            )
        )
        return message_id

    async def create_private_channel(self, user_id: str, name: str) -> str:
        self._record("create_private_channel", user_id, name)
        return f"chan-{next(self._ids)}"

    async def set_channel_permissions(
        self, channel_id: str, member_id: str, allow: list[str]
    ) -> None:
        self._record("set_channel_permissions", channel_id, member_id, allow)

    async def grant_role(self, user_id: str, role_name: str) -> None:
        self._record("grant_role", user_id, role_name)

    async def delete_channel(self, channel_id: str, reason: str = "") -> None:
        self._record("delete_channel", channel_id, reason)

    async def post_reaction_prompt(
        self, channel_id: str, content: str, options: list[str]
    ) -> str:
        self._record("post_reaction_prompt", channel_id, content, options)
        return f"prompt-{next(self._ids)}"

    async def fetch_recent_messages(
        self, channel_id: str, limit: int = 50
    ) -> list[ChannelMessage]:
        self._record("fetch_recent_messages", channel_id, limit)
        return list(self.channel_logs.get(channel_id, []))[-limit:]

    async def resolve_member(self, reference: str) -> str | None:
        self._record("resolve_member", reference)
        return self.members.get(reference.lstrip("@"))

    async def notify_staff(self, content: str) -> None:
        self._record("notify_staff", content)
        self.staff.append(content)


@pytest_asyncio.fixture
async def storage():
    """Create in-memory storage for testing."""
    from recruiter.storage import Storage

    st = Storage(":memory:")
    await st.init()
    yield st
    await st.close()


@pytest.fixture
def event_bus(storage):
    """Create EventBus with storage."""
    from recruiter.event_bus import EventBus

    return EventBus(storage)


@pytest.fixture
def tracker(storage, event_bus):
    """Create Tracker with storage and event bus."""
    from recruiter.tracker import Tracker

    return Tracker(event_bus=event_bus, storage=storage)


@pytest.fixture
def mock_llm():
    """Create mock LLM provider."""
    llm = Mock()
    llm.complete = AsyncMock(return_value=llm_reply("GENERAL_QUESTION", "Sure!"))
    return llm


@pytest.fixture
def settings():
    from recruiter.config import Settings

    return Settings()


@pytest.fixture
def platform():
    return FakeChatPlatform()


@pytest.fixture
def waiters():
    from recruiter.waiter import WaiterRegistry

    return WaiterRegistry()


@pytest.fixture
def runner(platform, storage, tracker):
    from recruiter.dialogue import SideEffectRunner

    return SideEffectRunner(platform, storage, tracker)


@pytest_asyncio.fixture
async def vouch(storage, waiters, runner, settings):
    from recruiter.vouch import VouchCoordinator

    coordinator = VouchCoordinator(storage, waiters, runner, settings)
    yield coordinator
    await coordinator.stop()


@pytest_asyncio.fixture
async def conversations(storage, mock_llm, settings, waiters, runner, vouch):
    """ConversationService wired to the fake platform and mock LLM."""
    from recruiter.dialogue import ConversationService, DialogueEngine
    from recruiter.llm import IntentClassifier

    service = ConversationService(
        storage,
        IntentClassifier(mock_llm, timeout=1.0),
        DialogueEngine(settings),
        waiters,
        runner,
        settings,
        vouch=vouch,
    )
    yield service
    await service.stop()


@pytest.fixture
def rehydration(storage, conversations, vouch, waiters, runner, settings):
    from recruiter.rehydration import RehydrationService

    return RehydrationService(storage, conversations, vouch, waiters, runner, settings)


@pytest.fixture
def seed(storage, settings):
    """Store an applicant whose conversation sits in a given step."""

    async def _seed(
        user_id: str = "u1",
        channel_id: str = "c1",
        step: ConversationStep = ConversationStep.AWAITING_INITIAL_MESSAGE,
        timeout: float | None = 3600,
        attempt_count: int = 0,
        last_processed_message_id: str | None = None,
        entered_at: datetime | None = None,
    ) -> ConversationState:
        now = entered_at or datetime.now(timezone.utc) - timedelta(seconds=1)
        await storage.save_applicant(
            ApplicantRecord(
                user_id=user_id,
                username=f"name-{user_id}",
                channel_id=channel_id,
                joined_at=now,
                last_activity_at=now,
            )
        )
        state = ConversationState(
            user_id=user_id,
            channel_id=channel_id,
            attempt_count=attempt_count,
            last_processed_message_id=last_processed_message_id,
        )
        state.enter(step, now, timeout)
        await storage.save_conversation_state(state)
        return state

    return _seed
