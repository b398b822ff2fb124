"""Application bootstrap and lifecycle management."""

import os
from datetime import datetime, timezone
from typing import Protocol

from .config import Settings, resolve_db_path
from .dialogue import ConversationService, DialogueEngine, SideEffectRunner
from .event_bus import EventBus
from .llm import ILLMProvider, IntentClassifier, LLMProvider
from .logging_config import get_logger
from .maintenance import ChannelCleanupJob
from .membership import MembershipHandler
from .models import BusMessage, InboundMessage, MemberEvent, ReactionEvent, Topic
from .platform import HttpChatPlatform, IChatPlatform
from .rehydration import RehydrationService
from .storage import IStorage, Storage
from .tracker import ITracker, Tracker
from .vouch import VouchCoordinator
from .waiter import WaiterRegistry

logger = get_logger(__name__)


class IApplication(Protocol):
    """Bootstrap and lifecycle."""

    async def start(self) -> None:
        """Initialize components in dependency order."""
        ...

    async def stop(self) -> None:
        """Shutdown in reverse order."""
        ...

    async def reset(self) -> None:
        """Reset data between test runs."""
        ...


def _parse_timestamp(value) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif value:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    else:
        return datetime.now(timezone.utc)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def member_event_from_payload(payload: dict) -> MemberEvent:
    return MemberEvent(
        user_id=str(payload["user_id"]), username=payload.get("username") or ""
    )


def message_from_payload(payload: dict) -> InboundMessage:
    return InboundMessage(
        message_id=str(payload["message_id"]),
        channel_id=str(payload["channel_id"]),
        author_id=str(payload["author_id"]),
        content=payload.get("content", ""),
        timestamp=_parse_timestamp(payload.get("timestamp")),
        is_bot=bool(payload.get("is_bot", False)),
    )


def reaction_from_payload(payload: dict) -> ReactionEvent:
    return ReactionEvent(
        message_id=str(payload["message_id"]),
        channel_id=str(payload["channel_id"]),
        user_id=str(payload["user_id"]),
        emoji=payload["emoji"],
    )


class Application:
    """Main application bootstrap.

    `platform` and `llm_provider` can be injected (tests); otherwise they
    are built from settings and the environment.
    """

    def __init__(
        self,
        db_path: str | None = None,
        settings: Settings | None = None,
        platform: IChatPlatform | None = None,
        llm_provider: ILLMProvider | None = None,
    ):
        env_db_path = os.getenv("DATABASE_URL") if db_path is None else db_path
        self._db_path = resolve_db_path(env_db_path)
        self._settings = settings or Settings.from_env()
        self._injected_platform = platform
        self._injected_llm = llm_provider

        # Components (will be initialized in start())
        self._storage: IStorage | None = None
        self._event_bus: EventBus | None = None
        self._tracker: ITracker | None = None
        self._llm: ILLMProvider | None = None
        self._platform: IChatPlatform | None = None
        self._waiters: WaiterRegistry | None = None
        self._conversations: ConversationService | None = None
        self._vouch: VouchCoordinator | None = None
        self._rehydration: RehydrationService | None = None
        self._membership: MembershipHandler | None = None
        self._cleanup: ChannelCleanupJob | None = None

    async def start(self) -> None:
        """Initialize components in dependency order."""
        logger.info("Starting application")

        # 1. Storage (no dependencies)
        self._storage = Storage(self._db_path)
        await self._storage.init()
        logger.info("Storage initialized")

        # 2. EventBus (depends on Storage for persistence)
        self._event_bus = EventBus(self._storage)

        # 3. Tracker (depends on EventBus + Storage)
        self._tracker = Tracker(self._event_bus, self._storage)
        await self._tracker.start()

        # 4. Classifier; without credentials every turn runs degraded
        self._llm = self._injected_llm
        if self._llm is None:
            try:
                self._llm = LLMProvider(
                    model=self._settings.classifier_model,
                    timeout=self._settings.classifier_timeout,
                )
            except ValueError as e:
                logger.warning("LLM provider disabled: %s", e)
        classifier = IntentClassifier(
            self._llm,
            community_name=self._settings.community_name,
            timeout=self._settings.classifier_timeout,
        )

        # 5. Chat platform
        self._platform = self._injected_platform or HttpChatPlatform(
            base_url=self._settings.platform_api_url,
            token=self._settings.platform_api_token,
            timeout=self._settings.platform_timeout,
            max_retries=self._settings.platform_max_retries,
        )

        # 6. Conversation core
        self._waiters = WaiterRegistry()
        runner = SideEffectRunner(self._platform, self._storage, self._tracker)
        self._vouch = VouchCoordinator(
            self._storage, self._waiters, runner, self._settings
        )
        self._conversations = ConversationService(
            self._storage,
            classifier,
            DialogueEngine(self._settings),
            self._waiters,
            runner,
            self._settings,
            vouch=self._vouch,
        )
        self._rehydration = RehydrationService(
            self._storage,
            self._conversations,
            self._vouch,
            self._waiters,
            runner,
            self._settings,
        )
        self._membership = MembershipHandler(
            self._storage, self._conversations, runner, self._settings
        )
        self._cleanup = ChannelCleanupJob(
            self._storage, self._conversations, runner, self._settings
        )

        self._subscribe()

        # 7. Pick up conversations that were waiting when we last stopped
        await self._rehydration.resume()
        self._cleanup.start()

        if self._llm is None:
            await runner.notify_staff(
                "system", "No LLM credentials configured; classifier is unavailable"
            )
        logger.info("All components initialized successfully")

    def _subscribe(self) -> None:
        self._event_bus.subscribe(Topic.MEMBER_JOINED, self._on_member_joined)
        self._event_bus.subscribe(Topic.MEMBER_LEFT, self._on_member_left)
        self._event_bus.subscribe(Topic.MESSAGE_RECEIVED, self._on_message)
        self._event_bus.subscribe(Topic.REACTION_ADDED, self._on_reaction)

    async def _on_member_joined(self, bus_message: BusMessage) -> None:
        await self._membership.on_member_joined(
            member_event_from_payload(bus_message.payload)
        )

    async def _on_member_left(self, bus_message: BusMessage) -> None:
        await self._membership.on_member_left(
            member_event_from_payload(bus_message.payload)
        )

    async def _on_message(self, bus_message: BusMessage) -> None:
        await self._rehydration.on_inbound_message(
            message_from_payload(bus_message.payload)
        )

    async def _on_reaction(self, bus_message: BusMessage) -> None:
        reaction = reaction_from_payload(bus_message.payload)
        if self._waiters.offer(reaction) is None:
            logger.debug("Reaction on %s matched no waiter", reaction.message_id)

    async def stop(self) -> None:
        """Shutdown in reverse order."""
        if self._cleanup:
            await self._cleanup.stop()
        if self._conversations:
            await self._conversations.stop()
        if self._vouch:
            await self._vouch.stop()
        if isinstance(self._platform, HttpChatPlatform):
            await self._platform.aclose()
        if self._storage:
            await self._storage.close()
            logger.info("Storage closed")

    async def reset(self) -> None:
        """Reset data between test runs."""
        if self._conversations:
            await self._conversations.stop()
        if self._vouch:
            await self._vouch.stop()
        if self._storage:
            await self._storage.clear()
            logger.info("Storage cleared")

    async def publish(self, topic: Topic, payload: dict, source: str = "api") -> None:
        """Put a platform event on the EventBus."""
        await self.event_bus.publish(
            BusMessage(
                id="",
                topic=topic,
                payload=payload,
                source=source,
                timestamp=datetime.now(timezone.utc),
            )
        )

    @property
    def storage(self) -> IStorage:
        """Get storage instance."""
        if not self._storage:
            raise RuntimeError("Application not started")
        return self._storage

    @property
    def event_bus(self) -> EventBus:
        if not self._event_bus:
            raise RuntimeError("Application not started")
        return self._event_bus

    @property
    def conversations(self) -> ConversationService:
        """Get conversation service instance."""
        if not self._conversations:
            raise RuntimeError("Application not started")
        return self._conversations

    @property
    def settings(self) -> Settings:
        return self._settings
