"""EventBus implementation for dispatching platform events."""

import asyncio
import uuid
from typing import Awaitable, Callable, Protocol

from ..logging_config import get_logger
from ..models import BusMessage, Topic
from ..storage import IStorage

logger = get_logger(__name__)


TopicHandler = Callable[[BusMessage], Awaitable[None]]


class IEventBus(Protocol):
    """In-memory pub/sub for platform events."""

    def subscribe(self, topic: Topic, handler: TopicHandler) -> None:
        """Subscribe a handler to a topic."""
        ...

    async def publish(self, message: BusMessage) -> None:
        """Publish BusMessage: persists it, then calls subscriber callbacks."""
        ...


class EventBus:
    """In-memory pub/sub event bus with a persisted inbound event log."""

    def __init__(self, storage: IStorage):
        self._storage = storage
        self._subscribers: dict[Topic, list[TopicHandler]] = {
            topic: [] for topic in Topic
        }

    def subscribe(self, topic: Topic, handler: TopicHandler) -> None:
        """Subscribe a handler to a topic."""
        self._subscribers[topic].append(handler)

    def clear_subscribers(self) -> None:
        """Drop all subscriptions."""
        for handlers in self._subscribers.values():
            handlers.clear()

    async def publish(self, message: BusMessage) -> None:
        """Publish BusMessage: persists it, then calls subscriber callbacks."""
        if not message.id:
            message.id = str(uuid.uuid4())

        # Log first so a crash inside a handler still leaves the event on record
        await self._storage.save_bus_message(message)

        handlers = self._subscribers.get(message.topic, [])

        if handlers:
            results = await asyncio.gather(
                *[handler(message) for handler in handlers],
                return_exceptions=True,
            )

            for i, result in enumerate(results):
                if isinstance(result, Exception):
                    logger.error(
                        "Error in %s handler %s: %s",
                        message.topic.value,
                        i,
                        result,
                        exc_info=result,
                    )
