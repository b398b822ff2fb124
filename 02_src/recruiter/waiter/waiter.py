"""Single-shot, deadline-bounded waiters and the per-user registry."""

import asyncio
import weakref
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from ..logging_config import get_logger
from ..models import InboundMessage, ReactionEvent, WaiterKind

logger = get_logger(__name__)

WaiterEvent = InboundMessage | ReactionEvent
EventPredicate = Callable[[WaiterEvent], bool]


class WaiterStatus(str, Enum):
    """Lifecycle of a TurnWaiter."""

    PENDING = "pending"
    RESOLVED = "resolved"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class TurnWaiter:
    """Resolves with the next qualifying event for one user, or expires.

    Message waiters accept messages authored by the user in the user's
    channel. Reaction waiters accept reactions in that channel; narrow them
    further with `predicate`.
    """

    def __init__(
        self,
        user_id: str,
        channel_id: str,
        kind: WaiterKind,
        timeout_at: datetime,
        predicate: EventPredicate | None = None,
    ):
        if kind is WaiterKind.NONE:
            raise ValueError("Cannot build a waiter of kind NONE")
        self.user_id = user_id
        self.channel_id = channel_id
        self.kind = kind
        self.timeout_at = timeout_at
        self.status = WaiterStatus.PENDING
        self._predicate = predicate
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self._future.done()

    def matches(self, event: WaiterEvent) -> bool:
        """Whether `event` qualifies for this waiter."""
        if event.channel_id != self.channel_id:
            return False
        if self.kind is WaiterKind.VOUCH_REACTION:
            if not isinstance(event, ReactionEvent):
                return False
        else:
            if not isinstance(event, InboundMessage):
                return False
            if event.author_id != self.user_id or event.is_bot:
                return False
        return self._predicate(event) if self._predicate else True

    def resolve(self, event: WaiterEvent) -> bool:
        """Deliver an event. Only the first delivery wins."""
        if self._future.done():
            return False
        self.status = WaiterStatus.RESOLVED
        self._future.set_result(event)
        return True

    def cancel(self) -> bool:
        """Disarm without an event. The waiting side sees None."""
        if self._future.done():
            return False
        self.status = WaiterStatus.CANCELLED
        self._future.set_result(None)
        return True

    async def wait(self) -> WaiterEvent | None:
        """Wait for the event; None when cancelled or expired."""
        if not self._future.done():
            remaining = (self.timeout_at - datetime.now(timezone.utc)).total_seconds()
            try:
                await asyncio.wait_for(
                    asyncio.shield(self._future), timeout=max(remaining, 0)
                )
            except asyncio.TimeoutError:
                if not self._future.done():
                    self.status = WaiterStatus.EXPIRED
                    self._future.set_result(None)
        return self._future.result()


class WaiterRegistry:
    """At most one armed waiter per user, plus the per-user turn locks."""

    def __init__(self):
        self._waiters: dict[str, TurnWaiter] = {}
        # A lock lives only while some turn holds a reference to it
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def lock(self, user_id: str) -> asyncio.Lock:
        """Lock serializing all turns for one user."""
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    def arm(self, waiter: TurnWaiter) -> None:
        """Arm a waiter, cancelling any prior one for the same user."""
        prior = self._waiters.get(waiter.user_id)
        if prior is not None and prior is not waiter:
            prior.cancel()
            logger.debug(
                "Replaced %s waiter for %s with %s",
                prior.kind.value,
                waiter.user_id,
                waiter.kind.value,
            )
        self._waiters[waiter.user_id] = waiter

    def get(self, user_id: str) -> TurnWaiter | None:
        """Live waiter for a user, if any."""
        waiter = self._waiters.get(user_id)
        if waiter is not None and waiter.done:
            self._waiters.pop(user_id, None)
            return None
        return waiter

    def disarm(self, user_id: str) -> None:
        """Cancel and forget the user's waiter."""
        waiter = self._waiters.pop(user_id, None)
        if waiter is not None:
            waiter.cancel()

    def discard(self, waiter: TurnWaiter) -> None:
        """Forget `waiter` if it is still the registered one."""
        if self._waiters.get(waiter.user_id) is waiter:
            self._waiters.pop(waiter.user_id, None)

    def offer(self, event: WaiterEvent) -> TurnWaiter | None:
        """Hand an event to the waiter it qualifies for; returns that waiter."""
        if isinstance(event, InboundMessage):
            candidates = [self._waiters.get(event.author_id)]
        else:
            candidates = list(self._waiters.values())

        for waiter in candidates:
            if waiter is None or waiter.done or not waiter.matches(event):
                continue
            if waiter.resolve(event):
                self.discard(waiter)
                return waiter
        return None

    def cancel_all(self) -> None:
        """Cancel every armed waiter."""
        for waiter in self._waiters.values():
            waiter.cancel()
        self._waiters.clear()

    def __len__(self) -> int:
        return sum(1 for waiter in self._waiters.values() if not waiter.done)
